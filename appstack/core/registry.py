# AppStack - Persistent Registry

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from appstack.core.errors import ApplicationNotFound
from appstack.core.models import ApplicationRecord

logger = logging.getLogger("appstack.registry")


class Registry:
    """JSON-file store for application records and port reservations.

    Layout on disk::

        {
          "apps": {"<app_id>": {...ApplicationRecord...}},
          "reserved_ports": {"8000": "<app_id>", "8001": null}
        }

    Every mutating call rewrites the file through a temp file, ``fsync`` and
    ``os.replace`` before returning, so a crash leaves either the old or the
    new document on disk.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.RLock()

    # -- persistence --------------------------------------------------------

    def _load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {"apps": {}, "reserved_ports": {}}
        with open(self.path, "r", encoding="utf-8") as f:
            data = json.load(f)
        data.setdefault("apps", {})
        data.setdefault("reserved_ports", {})
        return data

    def _save(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(
            dir=str(self.path.parent), prefix=".registry-", suffix=".json"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    # -- application records -------------------------------------------------

    def get(self, app_id: str) -> Optional[ApplicationRecord]:
        with self._lock:
            raw = self._load()["apps"].get(app_id)
        return ApplicationRecord.model_validate(raw) if raw else None

    def put(self, app_id: str, record: ApplicationRecord) -> None:
        with self._lock:
            data = self._load()
            data["apps"][app_id] = record.model_dump(mode="json")
            self._save(data)
        logger.info("Saved record for %s", app_id)

    def update(self, app_id: str, **changes: Any) -> ApplicationRecord:
        """Apply field changes to one record under the registry lock."""
        with self._lock:
            data = self._load()
            raw = data["apps"].get(app_id)
            if raw is None:
                raise ApplicationNotFound(app_id)
            record = ApplicationRecord.model_validate({**raw, **changes})
            data["apps"][app_id] = record.model_dump(mode="json")
            self._save(data)
        logger.info("Updated %s: %s", app_id, ", ".join(sorted(changes)))
        return record

    def delete(self, app_id: str) -> None:
        with self._lock:
            data = self._load()
            if data["apps"].pop(app_id, None) is not None:
                self._save(data)
                logger.info("Removed record for %s", app_id)

    def list(self) -> List[ApplicationRecord]:
        with self._lock:
            apps = self._load()["apps"]
        return [ApplicationRecord.model_validate(raw) for raw in apps.values()]

    # -- port reservations ---------------------------------------------------

    def get_reserved_ports(self) -> Set[int]:
        with self._lock:
            return {int(p) for p in self._load()["reserved_ports"]}

    def get_port_owners(self) -> Dict[int, Optional[str]]:
        with self._lock:
            return {int(p): owner for p, owner in self._load()["reserved_ports"].items()}

    def add_reserved_port(self, port: int, app_id: Optional[str] = None) -> None:
        with self._lock:
            data = self._load()
            data["reserved_ports"][str(port)] = app_id
            self._save(data)

    def remove_reserved_port(self, port: int, app_id: Optional[str] = None) -> bool:
        """Drop a reservation; a mismatched ``app_id`` leaves it in place."""
        with self._lock:
            data = self._load()
            if str(port) not in data["reserved_ports"]:
                return False
            owner = data["reserved_ports"][str(port)]
            if app_id is not None and owner not in (None, app_id):
                logger.warning(
                    "Port %d is owned by %s, not removing for %s", port, owner, app_id
                )
                return False
            del data["reserved_ports"][str(port)]
            self._save(data)
            return True
