"""Hyper-V provider backed by the Hyper-V PowerShell module.

Every call runs one short PowerShell command and parses JSON from stdout.
Names are validated before they are placed in a command and are always
emitted as single-quoted PowerShell literals.
"""

from __future__ import annotations

import asyncio
import json
import logging

from hvlab.config import settings
from hvlab.errors import HypervisorError
from hvlab.launcher import find_powershell
from hvlab.providers.base import Provider, VMActionResult, VMRecord
from hvlab.schemas import PowerState
from hvlab.validation import is_valid_identifier, validate_vm_name

logger = logging.getLogger(__name__)

LIST_VMS_SCRIPT = r"""
$ErrorActionPreference = 'Stop'
Import-Module Hyper-V
$vms = @(Get-VM | ForEach-Object {
  $ip = $_ | Get-VMNetworkAdapter | Select-Object -ExpandProperty IPAddresses |
    Where-Object { $_ -match '^\d+\.\d+\.\d+\.\d+$' -and $_ -ne '127.0.0.1' } |
    Select-Object -First 1
  [pscustomobject]@{
    Name = $_.Name
    State = [string]$_.State
    MemoryMB = [int64]($_.MemoryAssigned / 1MB)
    Processors = $_.ProcessorCount
    UptimeSeconds = [int64]$_.Uptime.TotalSeconds
    IPAddress = $ip
  }
})
ConvertTo-Json -InputObject $vms -Compress
"""

STATE_MAP = {
    "running": PowerState.RUNNING,
    "off": PowerState.OFF,
    "saved": PowerState.SAVED,
    "paused": PowerState.PAUSED,
}


def ps_quote(value: str) -> str:
    """Render value as a single-quoted PowerShell string literal."""
    return "'" + value.replace("'", "''") + "'"


def parse_json_output(stdout: str) -> list:
    """Parse ConvertTo-Json output, which is an object for single results."""
    text = stdout.strip()
    if not text:
        return []
    data = json.loads(text)
    if data is None:
        return []
    if isinstance(data, list):
        return data
    return [data]


class HyperVProvider(Provider):
    """Provider for the local Hyper-V host."""

    def __init__(self, powershell: str | None = None, timeout: float | None = None):
        self._powershell = powershell
        self.timeout = timeout if timeout is not None else settings.hyperv_command_timeout

    @property
    def name(self) -> str:
        return "hyperv"

    @property
    def display_name(self) -> str:
        return "Hyper-V"

    @property
    def powershell(self) -> str:
        """Lazy-resolve the PowerShell interpreter."""
        if self._powershell is None:
            self._powershell = find_powershell()
        return self._powershell

    async def _run_ps(self, script: str, timeout: float | None = None) -> tuple[int, str, str]:
        """Run a PowerShell command with timeout.

        Returns:
            Tuple of (return_code, stdout, stderr)

        Raises:
            TimeoutError: If the command exceeds timeout
        """
        if timeout is None:
            timeout = self.timeout

        process = await asyncio.create_subprocess_exec(
            self.powershell,
            "-NoProfile",
            "-NonInteractive",
            "-Command",
            script,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            stdin=asyncio.subprocess.DEVNULL,
        )

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.error(f"PowerShell command timed out after {timeout}s")
            try:
                process.kill()
                await process.wait()
            except Exception as e:
                logger.warning(f"Error killing timed-out process: {e}")
            raise TimeoutError(f"Hyper-V command timed out after {timeout}s")

        return (
            process.returncode or 0,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )

    async def _action(
        self,
        target: str,
        script: str,
        timeout: float | None = None,
    ) -> VMActionResult:
        """Run a management command and wrap its outcome."""
        try:
            returncode, stdout, stderr = await self._run_ps(script, timeout=timeout)
        except (TimeoutError, OSError) as e:
            return VMActionResult(success=False, target=target, error=str(e))

        if returncode != 0:
            return VMActionResult(
                success=False,
                target=target,
                stdout=stdout,
                stderr=stderr,
                error=stderr.strip() or f"PowerShell exited with code {returncode}",
            )
        return VMActionResult(success=True, target=target, stdout=stdout, stderr=stderr)

    @staticmethod
    def _invalid_name(name: str) -> VMActionResult | None:
        error = validate_vm_name(name)
        if error is not None:
            return VMActionResult(success=False, target=name, error=str(error))
        return None

    @staticmethod
    def _record_from_json(item: dict) -> VMRecord:
        state = STATE_MAP.get(str(item.get("State") or "").lower(), PowerState.UNKNOWN)
        ip = item.get("IPAddress") or None
        return VMRecord(
            name=str(item.get("Name") or "Unknown"),
            state=state,
            memory_mb=int(item.get("MemoryMB") or 0),
            processors=int(item.get("Processors") or 0),
            uptime_seconds=float(item.get("UptimeSeconds") or 0) if state == PowerState.RUNNING else 0.0,
            ip_address=ip.strip() if isinstance(ip, str) else None,
        )

    async def list_vms(self) -> list[VMRecord]:
        returncode, stdout, stderr = await self._run_ps(LIST_VMS_SCRIPT)
        if returncode != 0:
            raise HypervisorError(f"Get-VM failed: {stderr.strip() or returncode}")
        return [self._record_from_json(item) for item in parse_json_output(stdout)]

    async def existing_vms(self, names: list[str]) -> set[str]:
        """Batched existence query: one Get-VM call for all names."""
        valid = [n for n in names if validate_vm_name(n) is None]
        if not valid:
            return set()

        name_list = ",".join(ps_quote(n) for n in valid)
        script = (
            "Import-Module Hyper-V; "
            f"$found = @(Get-VM -Name {name_list} -ErrorAction SilentlyContinue | "
            "Select-Object -ExpandProperty Name); "
            "ConvertTo-Json -InputObject $found -Compress"
        )
        returncode, stdout, stderr = await self._run_ps(script)
        if returncode != 0:
            raise HypervisorError(f"Get-VM failed: {stderr.strip() or returncode}")

        present = {str(n).lower() for n in parse_json_output(stdout)}
        return {n for n in valid if n.lower() in present}

    async def start_vm(self, name: str) -> VMActionResult:
        invalid = self._invalid_name(name)
        if invalid:
            return invalid
        return await self._action(name, f"Start-VM -Name {ps_quote(name)} -ErrorAction Stop")

    async def stop_vm(self, name: str, force: bool = False) -> VMActionResult:
        invalid = self._invalid_name(name)
        if invalid:
            return invalid
        mode = "-TurnOff -Force" if force else "-Force"
        return await self._action(name, f"Stop-VM -Name {ps_quote(name)} {mode} -ErrorAction Stop")

    async def pause_vm(self, name: str) -> VMActionResult:
        invalid = self._invalid_name(name)
        if invalid:
            return invalid
        return await self._action(name, f"Suspend-VM -Name {ps_quote(name)} -ErrorAction Stop")

    async def remove_vm(self, name: str, delete_disks: bool = True) -> VMActionResult:
        invalid = self._invalid_name(name)
        if invalid:
            return invalid

        lines = [
            "$ErrorActionPreference = 'Stop'",
            "Import-Module Hyper-V",
            f"$vm = Get-VM -Name {ps_quote(name)} -ErrorAction SilentlyContinue",
            "if ($vm) {",
            "  $diskPaths = @($vm.HardDrives | ForEach-Object { $_.Path })",
            f"  Remove-VM -Name {ps_quote(name)} -Force",
        ]
        if delete_disks:
            lines += [
                "  foreach ($disk in $diskPaths) {",
                "    if ($disk -and (Test-Path -LiteralPath $disk)) {",
                "      Remove-Item -LiteralPath $disk -Force",
                "    }",
                "  }",
            ]
        lines.append("}")
        return await self._action(name, "\n".join(lines))

    async def switch_exists(self, name: str) -> bool:
        if not is_valid_identifier(name):
            return False
        returncode, stdout, _ = await self._run_ps(
            f"if (Get-VMSwitch -Name {ps_quote(name)} -ErrorAction SilentlyContinue) {{ 'EXISTS' }}"
        )
        return returncode == 0 and stdout.strip() == "EXISTS"

    async def remove_switch(self, name: str) -> VMActionResult:
        if not is_valid_identifier(name):
            return VMActionResult(success=False, target=name, error=f"Invalid switch name: {name}")
        script = (
            f"$sw = Get-VMSwitch -Name {ps_quote(name)} -ErrorAction SilentlyContinue; "
            "if ($sw) { Remove-VMSwitch -Name $sw.Name -Force -ErrorAction Stop }"
        )
        return await self._action(name, script)
