"""Provisioning script resolution and invocation building.

The provisioning procedure is an opaque PowerShell script. This module finds
an interpreter and the script, and turns a ProvisioningRequest into an argv
list. Values are passed as separate arguments to `-File`, never spliced into
a command string.
"""

from __future__ import annotations

import logging
import os
import shutil
import sys
from dataclasses import dataclass
from pathlib import Path

from hvlab.config import settings
from hvlab.schemas import Strategy

logger = logging.getLogger(__name__)

PACKAGE_DIR = Path(__file__).resolve().parent

STRATEGY_SWITCHES = {
    Strategy.FULL: None,
    Strategy.INCREMENTAL: "Incremental",
    Strategy.UPDATE_EXISTING: "UpdateExisting",
}


def _app_dirs() -> list[Path]:
    """Directories that may hold bundled tools, most specific first."""
    dirs = [PACKAGE_DIR, PACKAGE_DIR.parent, Path(sys.executable).resolve().parent]
    unique: list[Path] = []
    for d in dirs:
        if d not in unique:
            unique.append(d)
    return unique


def _well_known_powershell_paths() -> list[Path]:
    program_files = os.environ.get("ProgramFiles", r"C:\Program Files")
    return [
        Path(r"C:\Program Files\PowerShell\7\pwsh.exe"),
        Path(r"C:\Program Files\PowerShell\7-preview\pwsh.exe"),
        Path(program_files) / "PowerShell" / "7" / "pwsh.exe",
    ]


def _legacy_powershell_path() -> Path:
    system_root = os.environ.get("SystemRoot", r"C:\Windows")
    return Path(system_root) / "System32" / "WindowsPowerShell" / "v1.0" / "powershell.exe"


def find_powershell() -> str:
    """Locate a PowerShell interpreter.

    Search order, first match wins:
    1. HVLAB_POWERSHELL_PATH
    2. Bundled copy (pwsh/pwsh.exe next to the application, for air-gapped hosts)
    3. Well-known PowerShell 7 install locations
    4. pwsh on PATH
    5. Windows PowerShell 5.1
    Falls back to the bare command name.
    """
    if settings.powershell_path:
        return settings.powershell_path

    for app_dir in _app_dirs():
        for name in ("pwsh.exe", "pwsh"):
            bundled = app_dir / "pwsh" / name
            if bundled.is_file():
                return str(bundled)

    for candidate in _well_known_powershell_paths():
        if candidate.is_file():
            return str(candidate)

    on_path = shutil.which("pwsh")
    if on_path:
        return on_path

    legacy = _legacy_powershell_path()
    if legacy.is_file():
        return str(legacy)

    return "pwsh"


def find_deploy_script(working_dir: Path | None = None) -> Path | None:
    """Locate the provisioning script.

    Search order: HVLAB_DEPLOY_SCRIPT_PATH, application directories
    (including their scripts/ folders), the lab working directory, then the
    lab sources root.
    """
    if settings.deploy_script_path:
        explicit = Path(settings.deploy_script_path)
        return explicit if explicit.is_file() else None

    search: list[Path] = []
    for app_dir in _app_dirs():
        search.extend([app_dir, app_dir / "scripts"])
    if working_dir is not None:
        search.append(working_dir)
    search.append(Path(settings.lab_sources_root))

    for base in search:
        candidate = base / settings.deploy_script_name
        if candidate.is_file():
            return candidate
    return None


@dataclass
class ProvisioningRequest:
    """Named-parameter contract of the provisioning script."""
    lab_name: str
    lab_path: str
    switch_name: str
    switch_type: str
    domain_name: str
    manifest_path: str
    vm_path: str
    strategy: Strategy = Strategy.FULL
    admin_password: str | None = None

    def parameters(self) -> list[tuple[str, str]]:
        params = [
            ("LabName", self.lab_name),
            ("LabPath", self.lab_path),
            ("SwitchName", self.switch_name),
            ("SwitchType", self.switch_type),
            ("DomainName", self.domain_name),
            ("VMsJsonFile", self.manifest_path),
            ("VMPath", self.vm_path),
        ]
        if self.admin_password:
            params.append(("AdminPassword", self.admin_password))
        return params

    def switches(self) -> list[str]:
        switch = STRATEGY_SWITCHES.get(self.strategy)
        return [switch] if switch else []


def build_arguments(script_path: Path | str, request: ProvisioningRequest) -> list[str]:
    """Build the interpreter argv for running the script with request."""
    args = [
        "-NoProfile",
        "-NonInteractive",
        "-ExecutionPolicy", "Bypass",
        "-File", str(script_path),
    ]
    for key, value in request.parameters():
        args.extend([f"-{key}", value])
    for switch in request.switches():
        args.append(f"-{switch}")
    return args


def redact(text: str, secret: str | None, placeholder: str = "********") -> str:
    """Replace every occurrence of secret in text."""
    if not secret:
        return text
    return text.replace(secret, placeholder)


def describe_command(executable: str, args: list[str], secret: str | None) -> str:
    """Render an invocation for logging with the secret masked."""
    rendered = " ".join([executable, *(f'"{a}"' if " " in a else a for a in args)])
    return redact(rendered, secret)
