from __future__ import annotations
import glob, json, os
from typing import Any, Iterable, Sequence

import pyarrow as pa
import pyarrow.parquet as pq

EVENTS_SCHEMA = pa.schema([
    ("network_id", pa.int64()),
    ("contract_address", pa.string()),
    ("block_number", pa.int64()),
    ("tx_hash", pa.string()),
    ("log_index", pa.int64()),
    ("timestamp", pa.int64()),
    ("event_name", pa.string()),
    ("topic0", pa.string()),
    ("raw_data", pa.string()),
    ("decoded_data", pa.string()),   # JSON object, uint values as decimal strings
])

def _decoded_text(v: Any) -> str:
    return v if isinstance(v, str) else json.dumps(v, sort_keys=False)

def rows_to_table(rows: Sequence[dict[str, Any]]) -> pa.Table:
    cols: dict[str, list[Any]] = {f.name: [] for f in EVENTS_SCHEMA}
    for r in rows:
        for name in cols:
            v = r.get(name)
            cols[name].append(_decoded_text(v) if name == "decoded_data" and v is not None else v)
    return pa.Table.from_pydict(cols, schema=EVENTS_SCHEMA)


class EventShardWriter:
    """
    Writes persisted events to numbered shards with deterministic sort.
    """
    def __init__(self, out_dir: str, codec: str = "zstd") -> None:
        self.out_dir = out_dir
        self.shards_dir = os.path.join(out_dir, "shards")
        os.makedirs(self.shards_dir, exist_ok=True)
        self.codec = codec

    def next_shard_index(self) -> int:
        existing = sorted(glob.glob(os.path.join(self.shards_dir, "shard_*.parquet")))
        if not existing:
            return 1
        last = os.path.basename(existing[-1]).split("_")[1].split(".")[0]
        return int(last) + 1

    def write_shard(self, rows: Sequence[dict[str, Any]], shard_idx: int) -> str:
        table = rows_to_table(rows).sort_by([("block_number", "ascending"),
                                             ("tx_hash", "ascending"),
                                             ("log_index", "ascending")])
        out_path = os.path.join(self.shards_dir, f"shard_{shard_idx:05d}.parquet")
        tmp = out_path + ".tmp"
        pq.write_table(table, tmp, compression=self.codec)
        os.replace(tmp, out_path)
        return out_path

    def write_all(self, batches: Iterable[Sequence[dict[str, Any]]]) -> list[str]:
        """One shard per non-empty batch, numbered after any shards already present."""
        idx = self.next_shard_index()
        paths: list[str] = []
        for rows in batches:
            if not rows:
                continue
            paths.append(self.write_shard(rows, idx))
            idx += 1
        return paths
