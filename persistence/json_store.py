# persistence/json_store.py
from __future__ import annotations
import json, os, fcntl
from pathlib import Path
from typing import Any, Callable, Union

from backend.errors import PersistenceError

# JSON "DB": one file per table, one lock file per storage directory


class JsonFile:
    def __init__(self, base_dir: Union[str, Path], filename: str):
        self.base = Path(base_dir)
        self.path = self.base / filename
        self.lockfile = self.base / "_lock"
        try:
            self.base.mkdir(parents=True, exist_ok=True)
            if not self.path.exists():
                self._atomic_write({})
        except OSError as exc:
            raise PersistenceError(f"cannot initialise {self.path}: {exc}") from exc

    def read(self) -> dict:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as exc:
            raise PersistenceError(f"cannot read {self.path}: {exc}") from exc

    def _atomic_write(self, obj: dict) -> None:
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(obj, f, separators=(",", ":"), sort_keys=True, ensure_ascii=False)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, self.path)

    def update(self, mutator: Callable[[dict], Any]) -> Any:
        """
        Read-modify-write under an exclusive lock. Returns whatever the
        mutator returns; if the mutator raises, nothing is written.
        """
        try:
            with open(self.lockfile, "a") as lf:
                fcntl.flock(lf, fcntl.LOCK_EX)
                try:
                    data = self.read()
                    result = mutator(data)
                    self._atomic_write(data)
                finally:
                    fcntl.flock(lf, fcntl.LOCK_UN)
        except OSError as exc:
            raise PersistenceError(f"cannot write {self.path}: {exc}") from exc
        return result
