import asyncio, signal, time
import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .adapters.explorer_httpx import ExplorerClient
from .adapters.rate_limiter import RateLimiter
from .adapters.rpc_httpx import HttpxRPC
from .adapters.sql_store import SqlStore
from .application.cache import QueryCache
from .application.ingest import Indexer, StopToken, register_contracts
from .config import Settings
from .domain.networks import NETWORKS, get_network
from .errors import CometscanError, ConfigError, StorageUnavailable
from .utils.log import configure_logging

console = Console()


def _fmt_ts(ts):
    return time.strftime("%Y-%m-%d %H:%M:%S", time.gmtime(ts)) if ts is not None else "-"


@click.group()
@click.option("--log-level", default=None, help="Override LOG_LEVEL")
@click.pass_context
def cli(ctx, log_level):
    """cometscan — Compound V3 (Comet) market indexer."""
    try:
        settings = Settings.from_env()
    except ConfigError as e:
        raise click.ClickException(str(e))
    configure_logging(log_level or settings.log_level, console=Console(stderr=True))
    ctx.obj = settings


@cli.command("init-db")
@click.pass_obj
def init_db_cmd(settings):
    """Create every table the indexer writes to (no-op for existing ones)."""
    SqlStore(settings.database_url).create_schema()
    console.print(f"[green]schema ready[/] at {settings.database_url}")


@cli.command("index")
@click.argument("network", type=click.Choice(sorted(NETWORKS), case_sensitive=False))
@click.option("--source", type=click.Choice(["rpc", "explorer"]), default=None,
              help="Upstream to pull logs from (default: INDEXER_SOURCE)")
@click.option("--start-block", type=int, default=None, help="Genesis block when no cursor exists")
@click.option("--once", is_flag=True, help="Catch up to the current height, then exit")
@click.pass_obj
def index_cmd(settings, network, source, start_block, once):
    """Run the ingestion loop for NETWORK until SIGINT/SIGTERM."""
    net = get_network(network)
    source = source or settings.source
    store = SqlStore(settings.database_url)
    try:
        store.check_connection()
    except StorageUnavailable as e:
        console.print(f"[red]storage unavailable[/]: {e}")
        raise SystemExit(2)

    limiter = RateLimiter.from_millis(settings.rate_limit_interval_ms)
    try:
        if source == "rpc":
            client = HttpxRPC(settings.rpc_url_for(net), limiter=limiter, max_span=settings.batch_size)
        else:
            client = ExplorerClient(chain_id=net.chain_id, limiter=limiter, api_key=settings.explorer_api_key,
                                    base_url=settings.explorer_url, max_span=settings.batch_size)
    except ConfigError as e:
        raise click.ClickException(str(e))

    async def run():
        stop = StopToken()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop.stop)
            except (NotImplementedError, RuntimeError):
                pass  # platform without loop signal handlers
        try:
            tracked = await register_contracts(store, net.chain_id, net.tracked())
            indexer = Indexer(
                client=client, store=store, network_id=net.chain_id, contracts=tracked,
                genesis_block=settings.start_block if start_block is None else start_block,
                poll_interval_s=settings.poll_interval_s, retry_delay_s=settings.retry_delay_s,
            )
            console.print(Panel.fit(
                f"[bold]{net.name}[/] via {source} • span {settings.batch_size} • "
                f"{len(tracked)} contracts", title="cometscan"))
            if once:
                n = await indexer.sync_once(stop)
                console.print(f"[bold]done[/]: {n} batches")
            else:
                await indexer.run(stop)
        finally:
            await client.aclose()

    try:
        asyncio.run(run())
    except CometscanError as e:
        raise click.ClickException(str(e))


@cli.command("stats")
@click.option("--top", type=int, default=10, show_default=True, help="Top addresses to list")
@click.pass_obj
def stats_cmd(settings, top):
    """Counts from the indexed database."""
    store = SqlStore(settings.database_url)
    try:
        store.check_connection()
    except StorageUnavailable as e:
        raise click.ClickException(str(e))
    ov = store.overview()
    t = Table(title="indexed state", show_header=False)
    for k, v in ov.items():
        t.add_row(k.replace("_", " "), f"{v:,}")
    console.print(t)
    rows = store.top_addresses(top)
    if rows:
        a = Table(title=f"top {len(rows)} addresses")
        for col in ("address", "interactions", "first block", "last block"):
            a.add_column(col)
        for r in rows:
            a.add_row(r["address"], str(r["interaction_count"]),
                      str(r["first_seen_block"]), str(r["last_seen_block"]))
        console.print(a)


@cli.command("query-range")
@click.argument("start")
@click.argument("end")
@click.option("--network", type=click.Choice(sorted(NETWORKS), case_sensitive=False),
              default="SEPOLIA", show_default=True)
@click.option("--contract", "contract_name", default=None, help="Tracked contract name (default: first market)")
@click.option("--limit", type=int, default=20, show_default=True, help="Addresses to print")
@click.pass_obj
def query_range_cmd(settings, start, end, network, contract_name, limit):
    """Per-address activity between START and END (ISO dates or epoch seconds)."""
    from .application.read_service import ExplorerReadService

    net = get_network(network)
    ref = net.market(contract_name) if contract_name else net.tracked()[0]

    async def run():
        client = ExplorerClient(chain_id=net.chain_id, api_key=settings.explorer_api_key,
                                base_url=settings.explorer_url,
                                limiter=RateLimiter.from_millis(settings.rate_limit_interval_ms))
        try:
            return await ExplorerReadService(client, QueryCache(), ref.address).query_by_date_range(start, end)
        finally:
            await client.aclose()

    try:
        res = asyncio.run(run())
    except (CometscanError, KeyError) as e:
        raise click.ClickException(str(e))

    console.print(
        f"[bold]{ref.name}[/] {_fmt_ts(res.start)} → {_fmt_ts(res.end)}: "
        f"{res.total_addresses} addresses • {res.total_transactions} txs • {res.total_events} events")
    t = Table()
    for col in ("address", "txs", "events", "functions", "event types", "first", "last"):
        t.add_column(col)
    for a in res.addresses[:limit]:
        t.add_row(a.address, str(a.total_transactions), str(a.total_events),
                  ", ".join(f"{k}×{v}" for k, v in a.functions.most_common()),
                  ", ".join(f"{k}×{v}" for k, v in a.event_types.most_common()),
                  _fmt_ts(a.first_activity), _fmt_ts(a.last_activity))
    console.print(t)


@cli.command("export-events")
@click.option("--out", "out_dir", required=True, help="Output directory (shards land in OUT/shards)")
@click.option("--network", type=click.Choice(sorted(NETWORKS), case_sensitive=False), default=None)
@click.option("--batch", type=int, default=100_000, show_default=True, help="Rows per shard")
@click.pass_obj
def export_events_cmd(settings, out_dir, network, batch):
    """Dump persisted events to zstd Parquet shards."""
    from .adapters.parquet_export import EventShardWriter

    store = SqlStore(settings.database_url)
    try:
        store.check_connection()
    except StorageUnavailable as e:
        raise click.ClickException(str(e))
    network_id = get_network(network).chain_id if network else None
    paths = EventShardWriter(out_dir).write_all(store.iter_events(network_id, batch=batch))
    console.print(f"[bold]done[/]: {len(paths)} shards → {out_dir}")


if __name__ == "__main__":
    cli()
