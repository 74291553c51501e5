"""Deployment orchestrator.

Drives one lab deployment through its phases:

    validating -> preparing_workspace -> reconciling_state
    -> cleaning_artifacts (full redeploys only) -> awaiting_credential
    (domain labs only) -> invoking -> validating_artifacts -> done

The strategy is settled before any disk is touched: stale disk cleanup runs
only for a full deployment, so incremental and update-existing runs never
lose existing VM disks. Every path ends in a terminal outcome on the run;
nothing escapes to the caller except task cancellation.
"""

from __future__ import annotations

import asyncio
import json
import logging
import tempfile
import uuid
from pathlib import Path

from pydantic import SecretStr

from hvlab.artifacts import clean_stale_disks, validate_disk_artifacts, working_directory
from hvlab.config import settings
from hvlab.credentials import Credential, resolve_credential
from hvlab.errors import ArtifactValidationWarning, CredentialError, ExternalProcessError
from hvlab.launcher import (
    ProvisioningRequest,
    build_arguments,
    describe_command,
    find_deploy_script,
    find_powershell,
    redact,
)
from hvlab.process import ProcessRunner
from hvlab.progress import ProgressEvent, ProgressParser
from hvlab.providers.base import Provider
from hvlab.reconcile import StateReconciler
from hvlab.runs import DeploymentRun
from hvlab.schemas import DeployPhase, LabTopology, RunOutcome, Strategy
from hvlab.store import AppSettingsStore
from hvlab.validation import validate_topology

logger = logging.getLogger(__name__)

MANIFEST_PREFIX = "hvlab-vms-"

STRATEGY_DESCRIPTIONS = {
    Strategy.FULL: "full deployment",
    Strategy.INCREMENTAL: "incremental (only missing VMs are created)",
    Strategy.UPDATE_EXISTING: "update existing VMs and add missing ones",
}


def build_manifest(topology: LabTopology) -> list[dict]:
    """Machine list as handed to the provisioning script."""
    return [vm.model_dump(by_alias=True) | {"osImage": vm.os_image} for vm in topology.machines]


def write_manifest(topology: LabTopology, directory: str | Path | None = None) -> Path:
    """Write the machine manifest to a uniquely named temp file."""
    base = Path(directory or tempfile.gettempdir())
    path = base / f"{MANIFEST_PREFIX}{uuid.uuid4().hex}.json"
    path.write_text(json.dumps(build_manifest(topology), indent=2), encoding="utf-8")
    return path


class DeploymentOrchestrator:
    """Runs deployments of lab topologies onto the local Hyper-V host."""

    def __init__(
        self,
        provider: Provider,
        runner: ProcessRunner | None = None,
        reconciler: StateReconciler | None = None,
        app_settings: AppSettingsStore | None = None,
        powershell: str | None = None,
        script_path: str | Path | None = None,
        vm_path: str | Path | None = None,
        environ: dict[str, str] | None = None,
    ):
        self.provider = provider
        self.runner = runner or ProcessRunner()
        self.reconciler = reconciler or StateReconciler(
            provider, decision_timeout=settings.decision_timeout
        )
        self.app_settings = app_settings or AppSettingsStore()
        self._powershell = powershell
        self._script_path = Path(script_path) if script_path else None
        self._vm_path = Path(vm_path) if vm_path else None
        self.environ = environ

    def _finish(self, run: DeploymentRun, outcome: RunOutcome, message: str) -> RunOutcome:
        run.log(message, is_error=outcome == RunOutcome.FAILED)
        run.finish(outcome, message)
        return outcome

    def _fail(self, run: DeploymentRun, message: str) -> RunOutcome:
        return self._finish(run, RunOutcome.FAILED, message)

    def _cancelled(self, run: DeploymentRun, message: str | None = None) -> RunOutcome:
        reason = message or run.cancel_token.reason or "Deployment cancelled"
        return self._finish(run, RunOutcome.CANCELLED, reason)

    async def deploy(
        self,
        run: DeploymentRun,
        incremental: bool = False,
        admin_password: str | SecretStr | None = None,
    ) -> RunOutcome:
        """Deploy run.topology. Always finishes the run; returns its outcome."""
        topology = run.topology
        credential = Credential(admin_password)
        manifest_path: Path | None = None

        try:
            run.progress(0, f"Starting deployment of lab '{topology.name}'")

            # Validating
            run.set_phase(DeployPhase.VALIDATING)
            error = validate_topology(topology)
            if error is not None:
                return self._fail(run, f"Validation failed: {error}")
            if run.cancel_token.is_cancelled:
                return self._cancelled(run)

            # Preparing workspace
            run.set_phase(DeployPhase.PREPARING_WORKSPACE)
            workdir = working_directory(topology)
            workdir.mkdir(parents=True, exist_ok=True)
            vm_root = self._vm_path or Path(self.app_settings.vm_path())
            script = self._script_path or find_deploy_script(workdir)
            if script is None or not script.is_file():
                return self._fail(run, f"Deployment script not found: {settings.deploy_script_name}")
            run.log(f"Working directory: {workdir}")

            # Reconciling
            run.set_phase(DeployPhase.RECONCILING_STATE)
            reconciliation = await self.reconciler.classify(topology)
            strategy = await self.reconciler.resolve(
                reconciliation, run.request_decision, incremental=incremental
            )
            if strategy is None:
                return self._cancelled(run, "Deployment cancelled by operator")
            run.strategy = strategy
            run.log(f"Mode: {STRATEGY_DESCRIPTIONS[strategy]}")
            if run.cancel_token.is_cancelled:
                return self._cancelled(run)

            # Cleaning artifacts
            if strategy == Strategy.FULL:
                run.set_phase(DeployPhase.CLEANING_ARTIFACTS)
                run.progress(2, "Checking for orphaned disks...")
                clean_stale_disks(topology, [workdir, vm_root], log=run.log)

            # Awaiting credential
            if topology.requires_credential:
                run.set_phase(DeployPhase.AWAITING_CREDENTIAL)
                try:
                    await resolve_credential(
                        credential, topology.name, run.request_credential, self.environ
                    )
                except CredentialError as e:
                    if run.cancel_token.is_cancelled:
                        return self._cancelled(run)
                    return self._fail(run, str(e))
            if run.cancel_token.is_cancelled:
                return self._cancelled(run)

            # Invoking
            run.set_phase(DeployPhase.INVOKING)
            run.progress(4, "Loading deployment script...")
            manifest_path = write_manifest(topology)
            secret = credential.reveal()
            request = ProvisioningRequest(
                lab_name=topology.name,
                lab_path=str(workdir),
                switch_name=topology.network.switch_name,
                switch_type=topology.network.switch_type.value,
                domain_name=topology.domain_name or settings.default_domain_name,
                manifest_path=str(manifest_path),
                vm_path=str(vm_root),
                strategy=strategy,
                admin_password=secret,
            )
            executable = self._powershell or find_powershell()
            args = build_arguments(script, request)
            logger.info(f"Deploying lab {topology.name} ({strategy.value}) with {script}")
            run.log(f"Running: {describe_command(executable, args, secret)}")

            def on_log(line: str, is_error: bool) -> None:
                run.log(redact(line, secret), is_error)

            def on_progress(event: ProgressEvent) -> None:
                run.progress(event.percent, redact(event.message, secret))

            outcome = await self.runner.run(
                executable,
                args,
                ProgressParser(on_log, on_progress),
                cancel_token=run.cancel_token,
                cwd=str(workdir),
            )

            if outcome.cancelled:
                if not outcome.terminated:
                    run.log("Some deployment processes may still be running", is_error=True)
                return self._cancelled(run)
            if not outcome.success:
                error = ExternalProcessError(outcome.reason or "Deployment script failed", outcome.exit_code)
                return self._fail(run, f"Deployment failed: {error}")

            # Validating artifacts
            run.set_phase(DeployPhase.VALIDATING_ARTIFACTS)
            run.progress(95, "Validating disk images...")
            report = validate_disk_artifacts(topology, vm_root, log=run.log)
            if not report.ok:
                warning = ArtifactValidationWarning(report.failed_vms or [topology.name])
                run.log(f"WARNING: {warning}", is_error=True)
                run.log(
                    "  Re-run the deployment, or check that the ISO matches the "
                    "OS name expected by the script."
                )
                run.progress(100, "Deployment finished with warnings")
                return self._finish(
                    run, RunOutcome.SUCCEEDED_WITH_WARNINGS, "Deployment finished with warnings"
                )

            run.progress(100, "Deployment complete")
            return self._finish(run, RunOutcome.SUCCESS, "Deployment complete")

        except asyncio.CancelledError:
            run.finish(RunOutcome.CANCELLED, "Deployment task cancelled")
            raise
        except Exception as e:
            message = redact(f"Deployment failed unexpectedly: {e}", credential.reveal())
            # No traceback while a secret is held
            logger.error(f"Lab {topology.name}: {message}", exc_info=credential.is_empty)
            if run.log_file:
                message += f". See log file: {run.log_file}"
            return self._fail(run, message)
        finally:
            credential.clear()
            if manifest_path is not None:
                try:
                    manifest_path.unlink(missing_ok=True)
                except OSError as e:
                    logger.warning(f"Could not delete manifest {manifest_path}: {e}")
