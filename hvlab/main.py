"""HVLab Agent - local lab orchestration service.

This agent runs on the Hyper-V host and handles:
- Lab definition storage
- Lab deployment and removal runs with live progress
- Operator prompts (deployment decision, admin credential) during runs
- VM dashboard listing and power actions
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from hvlab.callbacks import get_dead_letters as fetch_dead_letters, notify_completion
from hvlab.config import settings
from hvlab.deploy import DeploymentOrchestrator
from hvlab.errors import HypervisorError, LockAcquisitionTimeout, StructuredError
from hvlab.inventory import InventoryService
from hvlab.locks import LabLockManager
from hvlab.logging_config import run_log_path, setup_logging
from hvlab.providers import get_default_provider, list_providers
from hvlab.providers.base import Provider
from hvlab.removal import RemovalOrchestrator
from hvlab.roles import RoleDetector, get_role_detector
from hvlab.runs import DeploymentRun, RunRegistry
from hvlab.schemas import (
    CredentialRequest,
    DecisionRequest,
    DeployRequest,
    LabSummary,
    LabTopology,
    ObservedVM,
    RemoveRequest,
    RunAccepted,
    RunKind,
    RunStatus,
    VMActionResponse,
)
from hvlab.store import AppSettingsStore, TopologyStore
from hvlab.validation import validate_topology, validate_vm_name
from hvlab.version import __version__

AGENT_STARTED_AT = datetime.now(timezone.utc)

# Configure structured logging
setup_logging()
logger = logging.getLogger(__name__)

VM_ACTIONS = ("start", "stop", "pause", "restart")

runs = RunRegistry(history_limit=settings.run_history_limit)
locks = LabLockManager()

# Background run tasks, kept referenced until they finish
_run_tasks: set[asyncio.Task] = set()

# Lazily initialized collaborators
_store: TopologyStore | None = None
_app_settings_store: AppSettingsStore | None = None
_role_detector: RoleDetector | None = None


def get_store() -> TopologyStore:
    global _store
    if _store is None:
        _store = TopologyStore()
    return _store


def get_app_settings_store() -> AppSettingsStore:
    global _app_settings_store
    if _app_settings_store is None:
        _app_settings_store = AppSettingsStore()
    return _app_settings_store


def get_shared_role_detector() -> RoleDetector:
    global _role_detector
    if _role_detector is None:
        _role_detector = get_role_detector()
    return _role_detector


def get_hypervisor() -> Provider:
    """Get the hypervisor provider.

    Raises:
        HTTPException: If no provider is available
    """
    provider = get_default_provider()
    if provider is None:
        raise HTTPException(
            status_code=503,
            detail=f"No hypervisor provider available. Registered: {list_providers()}",
        )
    return provider


def get_resource_usage() -> dict:
    """Gather host resource metrics for the info endpoint."""
    import psutil

    try:
        cpu_percent = psutil.cpu_percent(interval=0.1)
        memory = psutil.virtual_memory()

        # Disk usage for the partition holding VM disks
        disk_path = Path(settings.vm_path)
        while not disk_path.exists() and disk_path != disk_path.parent:
            disk_path = disk_path.parent
        disk = psutil.disk_usage(str(disk_path) if disk_path.exists() else str(Path.cwd().anchor))

        return {
            "cpu_percent": cpu_percent,
            "memory_percent": memory.percent,
            "memory_used_gb": round(memory.used / (1024 ** 3), 2),
            "memory_total_gb": round(memory.total / (1024 ** 3), 2),
            "disk_percent": disk.percent,
            "disk_used_gb": round(disk.used / (1024 ** 3), 2),
            "disk_total_gb": round(disk.total / (1024 ** 3), 2),
        }
    except Exception as e:
        logger.warning(f"Failed to gather resource usage: {e}")
        return {}


def _load_lab(name: str) -> LabTopology:
    topology = get_store().load(name)
    if topology is None:
        raise HTTPException(status_code=404, detail=f"Lab '{name}' not found")
    return topology


def _get_run(run_id: str) -> DeploymentRun:
    run = runs.get(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Run '{run_id}' not found")
    return run


async def _acquire_lab(lab_name: str) -> None:
    try:
        await locks.acquire(lab_name, timeout=settings.lock_acquire_timeout)
    except LockAcquisitionTimeout as e:
        active = runs.active_for(lab_name)
        raise HTTPException(
            status_code=409,
            detail=StructuredError.from_exception(
                e, lab_name=lab_name, run_id=active.id if active else None
            ).to_dict(),
        )


async def _execute_run(run: DeploymentRun, operation, callback_url: str | None) -> None:
    """Await a run's orchestrator, then release the lab and notify."""
    try:
        await operation
    except asyncio.CancelledError:
        logger.info(f"Run {run.id} task cancelled")
        raise
    except Exception as e:
        # Orchestrators finish their runs themselves; this is a last resort
        logger.exception(f"Run {run.id} raised: {e}")
    finally:
        locks.release(run.lab_name)

    await notify_completion(run, callback_url)


def _start_run(run: DeploymentRun, operation, callback_url: str | None) -> None:
    runs.add(run)
    task = asyncio.create_task(_execute_run(run, operation, callback_url))
    _run_tasks.add(task)
    task.add_done_callback(_run_tasks.discard)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - stop in-flight runs on shutdown."""
    logger.info(f"HVLab agent {__version__} starting...")
    logger.info(f"Lab config path: {settings.lab_config_path}")
    logger.info(f"Providers: {list_providers()}")

    yield

    for run in runs.active():
        run.cancel("Agent shutting down")
    if _run_tasks:
        await asyncio.wait(list(_run_tasks), timeout=settings.process_kill_grace * 2)

    logger.info("HVLab agent shutting down")


# Create FastAPI app
app = FastAPI(
    title="HVLab Agent",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Health Endpoints ---

@app.get("/health")
def health():
    """Basic health check."""
    return {
        "status": "ok",
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/info")
def info():
    """Return agent info, host usage and coordination state."""
    return {
        "version": __version__,
        "started_at": AGENT_STARTED_AT.isoformat(),
        "providers": list_providers(),
        "lab_config_path": settings.lab_config_path,
        "vm_path": get_app_settings_store().vm_path(),
        "log_directory": settings.log_directory,
        "resource_usage": get_resource_usage(),
        "active_runs": [r.id for r in runs.active()],
        "locks": locks.get_all_locks(),
    }


@app.get("/callbacks/dead-letters")
def get_dead_letters():
    """Completion callbacks that could not be delivered."""
    return {"dead_letters": fetch_dead_letters()}


# --- Lab Definitions ---

@app.get("/labs")
def list_labs() -> list[LabSummary]:
    return [
        LabSummary(
            name=t.name,
            description=t.description,
            machine_count=len(t.machines),
            domain_name=t.domain_name,
            path=t.path,
        )
        for t in get_store().list()
    ]


@app.get("/labs/{name}")
def get_lab(name: str):
    return _load_lab(name).model_dump(by_alias=True)


@app.put("/labs/{name}")
def save_lab(name: str, topology: LabTopology):
    """Validate and save a lab definition."""
    if topology.name != name:
        raise HTTPException(
            status_code=422,
            detail=f"Lab name in body ({topology.name!r}) does not match path ({name!r})",
        )
    error = validate_topology(topology)
    if error is not None:
        raise HTTPException(
            status_code=422,
            detail=StructuredError.from_exception(error, lab_name=name).to_dict(),
        )
    get_store().save(topology)
    return topology.model_dump(by_alias=True)


@app.delete("/labs/{name}")
def delete_lab(name: str):
    """Delete a lab definition (the deployed VMs are left alone)."""
    topology = _load_lab(name)
    if locks.is_locked(topology.name):
        raise HTTPException(status_code=409, detail=f"A run for lab {topology.name} is in progress")
    deleted = get_store().delete(topology)
    return {"deleted": deleted, "name": topology.name}


# --- Runs ---

@app.post("/labs/{name}/deploy", status_code=202)
async def deploy_lab(name: str, request: DeployRequest) -> RunAccepted:
    """Start deploying a saved lab.

    Returns 202 with the run id immediately; progress is available from
    /runs/{id} and /runs/{id}/events. Only one run per lab at a time.
    """
    topology = _load_lab(name)
    provider = get_hypervisor()
    await _acquire_lab(topology.name)

    run = DeploymentRun(RunKind.DEPLOY, topology, log_file=run_log_path("deployment"))
    orchestrator = DeploymentOrchestrator(provider, app_settings=get_app_settings_store())
    logger.info(f"Deploy request: lab={topology.name}, run={run.id}, incremental={request.incremental}")
    _start_run(
        run,
        orchestrator.deploy(run, incremental=request.incremental, admin_password=request.admin_password),
        request.callback_url,
    )
    return RunAccepted(run_id=run.id, kind=run.kind, lab_name=topology.name)


@app.post("/labs/{name}/remove", status_code=202)
async def remove_lab(name: str, request: RemoveRequest | None = None) -> RunAccepted:
    """Start tearing down a deployed lab."""
    topology = _load_lab(name)
    provider = get_hypervisor()
    await _acquire_lab(topology.name)

    run = DeploymentRun(RunKind.REMOVE, topology, log_file=run_log_path("removal"))
    orchestrator = RemovalOrchestrator(provider, get_store(), app_settings=get_app_settings_store())
    logger.info(f"Remove request: lab={topology.name}, run={run.id}")
    _start_run(run, orchestrator.remove(run), request.callback_url if request else None)
    return RunAccepted(run_id=run.id, kind=run.kind, lab_name=topology.name)


@app.get("/runs")
def list_runs() -> list[RunStatus]:
    return [r.status() for r in runs.list()]


@app.get("/runs/{run_id}")
def get_run(run_id: str) -> RunStatus:
    return _get_run(run_id).status()


@app.post("/runs/{run_id}/cancel")
def cancel_run(run_id: str) -> RunStatus:
    """Request cancellation. Cancelling a finished run is a no-op."""
    run = _get_run(run_id)
    if not run.is_finished:
        logger.info(f"Cancel requested for run {run_id}")
        run.cancel("Cancelled by operator")
    return run.status()


@app.post("/runs/{run_id}/decision")
def answer_decision(run_id: str, request: DecisionRequest) -> RunStatus:
    run = _get_run(run_id)
    if not run.answer_decision(request.choice):
        raise HTTPException(status_code=409, detail="No deployment decision is pending")
    return run.status()


@app.post("/runs/{run_id}/credential")
def answer_credential(run_id: str, request: CredentialRequest) -> RunStatus:
    """Supply the admin password; a blank password declines the prompt."""
    run = _get_run(run_id)
    password = request.password.get_secret_value() if request.password else None
    if not run.answer_credential(password):
        raise HTTPException(status_code=409, detail="No credential prompt is pending")
    return run.status()


@app.websocket("/runs/{run_id}/events")
async def run_events(websocket: WebSocket, run_id: str):
    """Stream a run's events: full history first, then live until it ends."""
    await websocket.accept()

    run = runs.get(run_id)
    if run is None:
        await websocket.send_json({"error": f"Run '{run_id}' not found"})
        await websocket.close(code=1008)
        return

    history, queue = run.subscribe()
    try:
        for event in history:
            await websocket.send_json(event.model_dump(mode="json"))
        while True:
            event = await queue.get()
            if event is None:
                break
            await websocket.send_json(event.model_dump(mode="json"))
        await websocket.close()
    except WebSocketDisconnect:
        logger.debug(f"Event stream client for run {run_id} disconnected")
    finally:
        run.unsubscribe(queue)


# --- VM Dashboard ---

@app.get("/vms")
async def list_vms() -> list[ObservedVM]:
    service = InventoryService(get_hypervisor(), get_store(), get_shared_role_detector())
    try:
        return await service.list_vms()
    except (HypervisorError, TimeoutError, OSError) as e:
        logger.error(f"Failed to list VMs: {e}")
        raise HTTPException(status_code=502, detail=f"Failed to list VMs: {e}")


def _check_vm_name(vm_name: str) -> None:
    error = validate_vm_name(vm_name)
    if error is not None:
        raise HTTPException(status_code=422, detail=str(error))


@app.post("/vms/{vm_name}/{action}")
async def vm_action(vm_name: str, action: str) -> VMActionResponse:
    """Start, stop, pause or restart a VM."""
    if action not in VM_ACTIONS:
        raise HTTPException(status_code=400, detail=f"Unknown action '{action}'. Valid: {list(VM_ACTIONS)}")
    _check_vm_name(vm_name)
    provider = get_hypervisor()

    if action == "start":
        result = await provider.start_vm(vm_name)
    elif action == "stop":
        result = await provider.stop_vm(vm_name)
    elif action == "pause":
        result = await provider.pause_vm(vm_name)
    else:
        result = await provider.restart_vm(vm_name, delay=settings.stop_grace_seconds)

    if not result.success:
        logger.warning(f"VM {action} failed for {vm_name}: {result.error}")
    return VMActionResponse(success=result.success, vm_name=vm_name, action=action, error=result.error)


@app.delete("/vms/{vm_name}")
async def remove_vm(vm_name: str, delete_disks: bool = True) -> VMActionResponse:
    """Turn off and remove a single VM."""
    _check_vm_name(vm_name)
    provider = get_hypervisor()

    await provider.stop_vm(vm_name, force=True)
    result = await provider.remove_vm(vm_name, delete_disks=delete_disks)
    if not result.success:
        logger.warning(f"VM removal failed for {vm_name}: {result.error}")
    return VMActionResponse(success=result.success, vm_name=vm_name, action="remove", error=result.error)


# --- Entry point ---

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "hvlab.main:app",
        host=settings.agent_host,
        port=settings.agent_port,
        reload=False,  # Reload would drop in-flight deployment runs
        timeout_keep_alive=300,
    )
