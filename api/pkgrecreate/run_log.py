"""
run_log.py
==========
Append-only, hash-chained JSONL log of pipeline events.

Each entry carries the SHA-256 of the previous entry, so a truncated or
edited log is detected by ``RunLog.verify()``. One log lives next to the
staging tree of each package and accumulates entries across runs.
"""
from __future__ import annotations

import hashlib
import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

GENESIS_HASH = "0" * 64


class RunLog:
    def __init__(self, log_file: Path, run_id: str = ""):
        self.log_file = log_file
        self.run_id = run_id
        self._lock = threading.Lock()
        self._seq, self._last_hash = self._load_tail()

    def _load_tail(self) -> "tuple[int, str]":
        if not self.log_file.exists():
            return 0, GENESIS_HASH
        count = 0
        last_line = ""
        with self.log_file.open("r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if line:
                    count += 1
                    last_line = line
        if not last_line:
            return 0, GENESIS_HASH
        try:
            return count, json.loads(last_line).get("_hash", GENESIS_HASH)
        except json.JSONDecodeError:
            return count, GENESIS_HASH

    @staticmethod
    def _compute_hash(entry: Dict) -> str:
        canonical = json.dumps(entry, sort_keys=True, separators=(",", ":"), default=str)
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def append(self, event: str, **details: Any) -> Dict:
        with self._lock:
            entry = {
                "seq": self._seq,
                "ts": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
                "run_id": self.run_id,
                "event": event,
                "prev_hash": self._last_hash,
            }
            entry.update(details)
            entry["_hash"] = self._compute_hash(entry)

            self.log_file.parent.mkdir(parents=True, exist_ok=True)
            with self.log_file.open("a", encoding="utf-8") as f:
                f.write(json.dumps(entry, separators=(",", ":"), sort_keys=True, default=str) + "\n")

            self._seq += 1
            self._last_hash = entry["_hash"]
            return entry

    def entries(self, run_id: Optional[str] = None) -> List[Dict]:
        if not self.log_file.exists():
            return []
        out = []
        with self.log_file.open("r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                entry = json.loads(line)
                if run_id is None or entry.get("run_id") == run_id:
                    out.append(entry)
        return out

    def verify(self) -> Dict[str, Any]:
        if not self.log_file.exists():
            return {"ok": True, "entries": 0, "status": "empty"}

        prev_hash = GENESIS_HASH
        count = 0
        with self.log_file.open("r", encoding="utf-8") as f:
            for line_num, line in enumerate(f):
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError as exc:
                    return {"ok": False, "entries": count, "status": "CORRUPT", "error": str(exc)}
                stored_hash = entry.pop("_hash", "")
                if entry.get("prev_hash") != prev_hash or self._compute_hash(entry) != stored_hash:
                    return {
                        "ok": False,
                        "entries": count,
                        "status": "TAMPERED",
                        "first_broken_at": line_num,
                    }
                prev_hash = stored_hash
                count += 1
        return {"ok": True, "entries": count, "status": "intact"}
