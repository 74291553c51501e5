"""Shared pytest fixtures for hvlab tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from hvlab.config import settings
from hvlab.process import ExitOutcome, ExitStatus
from hvlab.providers.base import Provider, VMActionResult, VMRecord
from hvlab.schemas import LabTopology, NetworkConfig, PowerState, VMSpec

MB = 1024 * 1024


class FakeProvider(Provider):
    """In-memory hypervisor used in place of Hyper-V."""

    def __init__(self, vms: list[str] | None = None, switches: list[str] | None = None):
        self.vms: dict[str, VMRecord] = {
            name.lower(): VMRecord(name=name, state=PowerState.RUNNING, memory_mb=2048, processors=2)
            for name in (vms or [])
        }
        self.switches = set(switches or [])
        self.calls: list[tuple] = []
        self.fail_graceful_stop: set[str] = set()
        self.fail_remove: set[str] = set()

    @property
    def name(self) -> str:
        return "fake"

    async def list_vms(self) -> list[VMRecord]:
        self.calls.append(("list_vms",))
        return list(self.vms.values())

    async def start_vm(self, name: str) -> VMActionResult:
        self.calls.append(("start_vm", name))
        self.vms[name.lower()].state = PowerState.RUNNING
        return VMActionResult(success=True, target=name)

    async def stop_vm(self, name: str, force: bool = False) -> VMActionResult:
        self.calls.append(("stop_vm", name, force))
        if not force and name in self.fail_graceful_stop:
            return VMActionResult(success=False, target=name, error="guest did not respond")
        if name.lower() in self.vms:
            self.vms[name.lower()].state = PowerState.OFF
        return VMActionResult(success=True, target=name)

    async def pause_vm(self, name: str) -> VMActionResult:
        self.calls.append(("pause_vm", name))
        self.vms[name.lower()].state = PowerState.PAUSED
        return VMActionResult(success=True, target=name)

    async def remove_vm(self, name: str, delete_disks: bool = True) -> VMActionResult:
        self.calls.append(("remove_vm", name, delete_disks))
        if name in self.fail_remove:
            return VMActionResult(success=False, target=name, error="VM is locked")
        self.vms.pop(name.lower(), None)
        return VMActionResult(success=True, target=name)

    async def switch_exists(self, name: str) -> bool:
        return name in self.switches

    async def remove_switch(self, name: str) -> VMActionResult:
        self.calls.append(("remove_switch", name))
        self.switches.discard(name)
        return VMActionResult(success=True, target=name)


class FakeRunner:
    """Stands in for ProcessRunner; replays scripted output lines."""

    def __init__(
        self,
        lines: list[tuple[str, bool]] | None = None,
        status: ExitStatus = ExitStatus.SUCCESS,
        exit_code: int = 0,
        on_run=None,
    ):
        self.lines = lines or []
        self.status = status
        self.exit_code = exit_code
        self.on_run = on_run
        self.calls: list[dict] = []

    async def run(self, executable, args, on_line, cancel_token=None, cwd=None, env=None):
        self.calls.append({"executable": executable, "args": list(args), "cwd": cwd, "env": env})
        if self.on_run is not None:
            self.on_run(args)
        for line, is_error in self.lines:
            on_line(line, is_error)
        if cancel_token is not None and cancel_token.is_cancelled:
            return ExitOutcome(status=ExitStatus.CANCELLED, reason=cancel_token.reason)
        if self.status == ExitStatus.SUCCESS:
            return ExitOutcome(status=ExitStatus.SUCCESS, exit_code=0)
        return ExitOutcome(status=self.status, exit_code=self.exit_code, reason="Process exited with code 1")


def write_disk(vm_root: Path, vm_name: str, size_mb: int) -> Path:
    """Create a sparse disk image file of size_mb."""
    vm_dir = vm_root / vm_name
    vm_dir.mkdir(parents=True, exist_ok=True)
    disk = vm_dir / f"{vm_name}.vhdx"
    with open(disk, "wb") as f:
        f.truncate(size_mb * MB)
    return disk


def arg_value(args: list[str], name: str) -> str | None:
    """Value following -name in an argv list."""
    flag = f"-{name}"
    if flag in args:
        index = args.index(flag)
        if index + 1 < len(args):
            return args[index + 1]
    return None


@pytest.fixture
def lab_dirs(tmp_path, monkeypatch) -> dict[str, Path]:
    """Point every storage setting at a temp directory tree."""
    dirs = {
        "root": tmp_path / "LabSources",
        "config": tmp_path / "LabSources" / "LabConfig",
        "vms": tmp_path / "LabSources" / "VMs",
        "logs": tmp_path / "LabSources" / "Logs",
    }
    for path in dirs.values():
        path.mkdir(parents=True, exist_ok=True)

    monkeypatch.setattr(settings, "lab_sources_root", str(dirs["root"]))
    monkeypatch.setattr(settings, "lab_config_path", str(dirs["config"]))
    monkeypatch.setattr(settings, "legacy_lab_config_path", "")
    monkeypatch.setattr(settings, "vm_path", str(dirs["vms"]))
    monkeypatch.setattr(settings, "log_directory", str(dirs["logs"]))
    monkeypatch.setattr(settings, "app_settings_path", str(tmp_path / "settings.json"))
    monkeypatch.setattr(settings, "enable_role_detection", False)
    monkeypatch.delenv(settings.credential_env_var, raising=False)
    return dirs


@pytest.fixture
def deploy_script(lab_dirs) -> Path:
    script = lab_dirs["root"] / settings.deploy_script_name
    script.write_text("param()\n", encoding="utf-8")
    return script


@pytest.fixture
def topology(lab_dirs) -> LabTopology:
    """Two-machine workgroup lab stored in the config directory."""
    return LabTopology(
        name="TestLab",
        description="Unit test lab",
        network=NetworkConfig(switch_name="TestSwitch"),
        machines=[
            VMSpec(name="DC01", role="DC", memory_gb=4),
            VMSpec(name="WS01", role="Client"),
        ],
        path=str(lab_dirs["config"] / "TestLab.json"),
    )


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider(switches=["TestSwitch"])
