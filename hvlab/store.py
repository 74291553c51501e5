"""Lab definition and application settings persistence.

Each lab is one JSON file named after the lab in the lab config directory.
An optional legacy directory from older installs is read as well but never
written to.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from hvlab.config import settings
from hvlab.errors import ValidationError
from hvlab.schemas import LabTopology, SwitchType, VMSpec
from hvlab.validation import is_valid_lab_name

logger = logging.getLogger(__name__)


class TopologyStore:
    """Reads and writes lab definition files."""

    def __init__(self, config_dir: str | Path | None = None, legacy_dir: str | Path | None = None):
        self.config_dir = Path(config_dir or settings.lab_config_path)
        legacy = legacy_dir if legacy_dir is not None else settings.legacy_lab_config_path
        self.legacy_dir = Path(legacy) if legacy else None

    def _dirs(self) -> list[Path]:
        dirs = [self.config_dir]
        if self.legacy_dir is not None and self.legacy_dir != self.config_dir:
            dirs.append(self.legacy_dir)
        return dirs

    def path_for(self, name: str) -> Path:
        if not is_valid_lab_name(name):
            raise ValidationError("name", name, "Lab name contains invalid characters")
        return self.config_dir / f"{name}.json"

    @staticmethod
    def read(path: Path) -> LabTopology | None:
        """Read one definition file, returning None if it is unreadable."""
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            topology = LabTopology.model_validate(data)
        except (OSError, json.JSONDecodeError, ValueError) as e:
            logger.warning(f"Skipping unreadable lab definition {path}: {e}")
            return None
        topology.path = str(path)
        return topology

    def list(self) -> list[LabTopology]:
        """All stored labs, primary directory first, de-duplicated by name."""
        labs: list[LabTopology] = []
        seen: set[str] = set()
        for directory in self._dirs():
            if not directory.is_dir():
                continue
            for path in sorted(directory.glob("*.json")):
                topology = self.read(path)
                if topology is None or topology.name.lower() in seen:
                    continue
                seen.add(topology.name.lower())
                labs.append(topology)
        return labs

    def load(self, name: str) -> LabTopology | None:
        key = name.lower()
        for directory in self._dirs():
            candidate = directory / f"{name}.json"
            if candidate.is_file():
                topology = self.read(candidate)
                if topology is not None:
                    return topology
        # File names can drift from the lab name when files are copied by hand
        for topology in self.list():
            if topology.name.lower() == key:
                return topology
        return None

    def save(self, topology: LabTopology) -> Path:
        """Write the definition as indented JSON and stamp its path."""
        path = self.path_for(topology.name)
        path.parent.mkdir(parents=True, exist_ok=True)
        topology.path = str(path)
        path.write_text(topology.model_dump_json(indent=2, by_alias=True), encoding="utf-8")
        logger.info(f"Saved lab definition {topology.name} to {path}")
        return path

    def delete(self, topology: LabTopology) -> bool:
        """Delete a lab's definition file. Returns True if a file was removed."""
        path = Path(topology.path) if topology.path else self.path_for(topology.name)
        if not path.is_file():
            return False
        path.unlink()
        logger.info(f"Deleted lab definition {path}")
        return True

    def latest(self) -> LabTopology | None:
        """The most recently written definition in the config directory."""
        if not self.config_dir.is_dir():
            return None
        files = sorted(
            self.config_dir.glob("*.json"),
            key=lambda p: p.stat().st_mtime,
            reverse=True,
        )
        for path in files:
            topology = self.read(path)
            if topology is not None:
                return topology
        return None

    def machine_lookup(self) -> dict[str, VMSpec]:
        """Map lower-cased VM name to its VMSpec, from the latest definition."""
        topology = self.latest()
        if topology is None:
            return {}
        return {vm.name.lower(): vm for vm in topology.machines}

    def switch_in_use(self, switch_name: str, exclude: str | None = None) -> list[str]:
        """Names of stored labs (other than exclude) that reference switch_name."""
        target = switch_name.lower()
        skip = exclude.lower() if exclude else None
        users = []
        for topology in self.list():
            if topology.name.lower() == skip:
                continue
            if target in {s.lower() for s in topology.switch_names()}:
                users.append(topology.name)
        return users


# --- Application settings ---

class AppSettings(BaseModel):
    """Operator preferences persisted between sessions."""
    model_config = ConfigDict(populate_by_name=True)

    default_lab_path: str = Field(r"C:\LabSources", alias="DefaultLabPath")
    lab_config_path: str = Field(r"C:\LabSources\LabConfig", alias="LabConfigPath")
    iso_path: str = Field(r"C:\LabSources\ISOs", alias="ISOPath")
    vm_path: str = Field(r"C:\LabSources\VMs", alias="VMPath")
    default_switch_name: str = Field("LabSwitch", alias="DefaultSwitchName")
    default_switch_type: SwitchType = Field(SwitchType.INTERNAL, alias="DefaultSwitchType")
    enable_auto_start: bool = Field(False, alias="EnableAutoStart")
    refresh_interval_seconds: int = Field(5, alias="RefreshIntervalSeconds")
    max_log_lines: int = Field(1000, alias="MaxLogLines")


def default_app_settings_path() -> Path:
    if settings.app_settings_path:
        return Path(settings.app_settings_path)
    base = os.environ.get("LOCALAPPDATA")
    root = Path(base) if base else Path.home() / ".local" / "share"
    return root / "HVLab" / "settings.json"


class AppSettingsStore:
    """Loads and saves AppSettings as JSON."""

    def __init__(self, path: str | Path | None = None):
        self.path = Path(path) if path else default_app_settings_path()

    def load_from_path(self, path: Path) -> AppSettings:
        data = json.loads(path.read_text(encoding="utf-8"))
        return AppSettings.model_validate(data)

    def load_or_default(self) -> AppSettings:
        """Load saved settings; missing or corrupt files yield defaults."""
        if not self.path.is_file():
            return AppSettings()
        try:
            return self.load_from_path(self.path)
        except (OSError, json.JSONDecodeError, ValueError) as e:
            logger.warning(f"Could not read settings {self.path}, using defaults: {e}")
            return AppSettings()

    def save(self, app_settings: AppSettings) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(app_settings.model_dump_json(indent=2, by_alias=True), encoding="utf-8")

    def vm_path(self) -> str:
        """VM storage root: saved preference, else the agent setting."""
        if self.path.is_file():
            saved = self.load_or_default().vm_path
            if saved:
                return saved
        return settings.vm_path
