"""On-disk machine configuration store."""

from __future__ import annotations

import json
from pathlib import Path
from typing import List

from vmachine.constants import CONFIG_SUFFIX
from vmachine.exceptions import InvalidConfigError, ManagerError, NoSuchVMError
from vmachine.models import VMRecord, now
from vmachine.utils import ensure_directory, log, write_atomic


class ConfigStore:
    """One JSON document per machine under a backend's config directory."""

    def __init__(self, config_dir: Path) -> None:
        self.config_dir = config_dir

    def path_for(self, name: str) -> Path:
        return self.config_dir / f"{name}{CONFIG_SUFFIX}"

    def exists(self, name: str) -> bool:
        return self.path_for(name).is_file()

    def validate(self, record: VMRecord) -> None:
        if not record.name:
            raise ManagerError("encountered machine with no name")
        config_path = Path(record.config_path)
        if config_path.parent.resolve() != self.config_dir.resolve():
            raise ManagerError(
                f"config path {record.config_path} of machine {record.name} is outside {self.config_dir}"
            )

    def persist(self, record: VMRecord) -> None:
        self.validate(record)
        ensure_directory(self.config_dir)
        payload = json.dumps(record.to_dict(), indent=2, sort_keys=True)
        write_atomic(Path(record.config_path), payload + "\n")

    def load(self, name: str) -> VMRecord:
        return self._load_path(self.path_for(name), name)

    def _load_path(self, path: Path, name: str) -> VMRecord:
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise NoSuchVMError(f"{name}: VM does not exist") from None
        except OSError as exc:
            raise InvalidConfigError(f"failed to read config of {name} at {path}: {exc}") from exc
        try:
            record = VMRecord.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as exc:
            raise InvalidConfigError(f"failed to parse config of {name} at {path}: {exc}") from exc
        if not record.name:
            raise ManagerError("encountered machine with no name")
        # The file location is authoritative if the machine directory was moved.
        record.config_path = str(path)
        return record

    def enumerate(self) -> List[VMRecord]:
        """Load every machine config, backfilling missing timestamps.

        Stops at the first unreadable file rather than skipping it.
        """
        if not self.config_dir.is_dir():
            return []
        records = []
        for path in sorted(self.config_dir.glob(f"*{CONFIG_SUFFIX}")):
            if not path.is_file():
                continue
            name = path.name[: -len(CONFIG_SUFFIX)]
            record = self._load_path(path, name)
            if record.created is None or record.last_up is None:
                if record.created is None:
                    record.created = now()
                if record.last_up is None:
                    record.last_up = record.created
                log("DEBUG", f"Backfilled timestamps for machine {record.name}")
                self.persist(record)
            records.append(record)
        return records
