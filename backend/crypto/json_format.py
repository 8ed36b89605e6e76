# ========== Imports ==========
import json
from datetime import datetime, timezone
from typing import Any, Iterable, Tuple


# ========== stabilise Json ==========
# key-sorted canonical form, used for anything written to disk or compared.
def stabilise_json(obj) -> bytes:
    return json.dumps(
        obj,
        separators=(",", ":"),  # Eliminate white space / reduce bytes required.
        sort_keys=True,         # so the same payload has identical bytes each time.
        ensure_ascii=False,
        allow_nan=False
    ).encode("utf-8")


# ========== ordered Json ==========
# Fixed field order, NOT key-sorted. Byte-compatible with JSON.stringify on
# the same (key, value) sequence: compact separators, non-ASCII left as UTF-8.
def ordered_json(fields: Iterable[Tuple[str, Any]]) -> bytes:
    body = ",".join(
        json.dumps(key, ensure_ascii=False) + ":" + json.dumps(value, ensure_ascii=False, allow_nan=False)
        for key, value in fields
    )
    return ("{" + body + "}").encode("utf-8")


# ========== ISO-8601 timestamps ==========
def iso_now() -> str:
    # millisecond precision with a trailing Z, e.g. 2024-05-01T09:30:00.123Z
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
