import json
import os
from pathlib import Path
from typing import Any


def json_dumps(obj, normalize: bool = False) -> str:
    """Return a JSON string.

    Documents committed to the desired-state repo use `normalize=True` so
    that re-writing an unchanged document produces an identical file and
    no spurious commit. Store rows keep insertion order.
    """
    if normalize:
        return json.dumps(obj, sort_keys=True, indent=2, separators=(",", ": "), ensure_ascii=False)
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False)


def atomic_write_json(path: Path, obj) -> None:
    """Write a normalized JSON document atomically.

    Writes to a per-process temp file then renames into place, so a
    concurrent reader sees either the old or the new document.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    with tmp.open("w", encoding="utf-8") as f:
        f.write(json_dumps(obj, normalize=True))
        f.write("\n")
    tmp.replace(path)


def read_json(path: Path) -> Any:
    with path.open(encoding="utf-8") as f:
        return json.load(f)
