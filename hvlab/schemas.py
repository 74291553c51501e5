"""Lab topology and agent protocol schemas.

These Pydantic models define the persisted lab definition (one JSON file per
lab), the observed VM inventory, and the data structures exchanged with the
shell that drives the agent over HTTP/WebSocket.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, SecretStr

from hvlab.roles import derive_os_image


class SwitchType(str, Enum):
    """Hyper-V virtual switch types."""
    INTERNAL = "Internal"
    EXTERNAL = "External"
    PRIVATE = "Private"


class PowerState(str, Enum):
    """Observed VM power state."""
    RUNNING = "Running"
    OFF = "Off"
    SAVED = "Saved"
    PAUSED = "Paused"
    UNKNOWN = "Unknown"


# --- Lab topology (desired state) ---

class NetworkConfig(BaseModel):
    """Lab-wide virtual network."""
    model_config = ConfigDict(populate_by_name=True)

    switch_name: str = Field("LabSwitch", alias="switchName")
    switch_type: SwitchType = Field(SwitchType.INTERNAL, alias="switchType")
    address_prefix: str | None = Field(None, alias="addressPrefix")
    vlan_id: int | None = Field(None, alias="vlanId")


class VMSpec(BaseModel):
    """Desired configuration of one lab machine."""
    model_config = ConfigDict(populate_by_name=True)

    name: str
    role: str = "MemberServer"  # Free-form tag: DC, FileServer, Client, ...
    memory_gb: int = Field(2, alias="memoryGB")
    processors: int = 2
    disk_size_gb: int = Field(40, alias="diskSizeGB")
    switch_name: str | None = Field(None, alias="switchName")  # Per-VM override
    ip_address: str | None = Field(None, alias="ipAddress")
    subnet_mask: str | None = Field(None, alias="subnetMask")
    gateway: str | None = None
    dns_servers: list[str] | None = Field(None, alias="dnsServers")
    time_zone: str | None = Field("Pacific Standard Time", alias="timeZone")
    iso_path: str | None = Field(None, alias="isoPath")  # Empty = no install media

    @property
    def os_image(self) -> str:
        """Derived image family: 'server' or 'client'."""
        return derive_os_image(self.role)


class LabTopology(BaseModel):
    """Declarative desired state of a lab: network plus ordered machine list."""
    model_config = ConfigDict(populate_by_name=True)

    name: str = "MyLab"
    description: str | None = None
    network: NetworkConfig = Field(default_factory=NetworkConfig)
    machines: list[VMSpec] = Field(default_factory=list)
    domain_name: str | None = Field(None, alias="domainName")
    custom_roles: list[str] = Field(default_factory=list, alias="customRoles")
    path: str | None = None  # Stamped by the store after the first save

    @property
    def requires_credential(self) -> bool:
        """Directory-service labs need an administrative credential."""
        return bool(self.domain_name and self.domain_name.strip())

    def switch_names(self) -> set[str]:
        """Every switch this topology references (lab switch + overrides)."""
        names = {self.network.switch_name}
        names.update(vm.switch_name for vm in self.machines if vm.switch_name)
        return names


# --- Observed infrastructure ---

class ObservedVM(BaseModel):
    """A VM as currently reported by the hypervisor."""
    name: str
    state: PowerState = PowerState.UNKNOWN
    memory_gb: int = 0
    processors: int = 0
    uptime_seconds: float = 0.0
    ip_address: str | None = None
    role: str = "Unknown"
    detected_role: str | None = None  # Heuristic, from live probing

    @property
    def can_start(self) -> bool:
        return self.state in (PowerState.OFF, PowerState.SAVED)

    @property
    def can_stop(self) -> bool:
        return self.state == PowerState.RUNNING

    @property
    def can_pause(self) -> bool:
        return self.state == PowerState.RUNNING


# --- Runs ---

class RunKind(str, Enum):
    DEPLOY = "deploy"
    REMOVE = "remove"


class DeployPhase(str, Enum):
    """Deployment state machine phases, in execution order."""
    PENDING = "pending"
    VALIDATING = "validating"
    PREPARING_WORKSPACE = "preparing_workspace"
    RECONCILING_STATE = "reconciling_state"
    CLEANING_ARTIFACTS = "cleaning_artifacts"
    AWAITING_CREDENTIAL = "awaiting_credential"
    INVOKING = "invoking"
    VALIDATING_ARTIFACTS = "validating_artifacts"
    REMOVING = "removing"
    DONE = "done"


class Strategy(str, Enum):
    """How the provisioning procedure treats machines that already exist."""
    FULL = "full"
    INCREMENTAL = "incremental"
    UPDATE_EXISTING = "update-existing"


class DeploymentChoice(str, Enum):
    """Operator answers when the lab overlaps existing infrastructure."""
    UPDATE_EXISTING = "update-existing"
    INCREMENTAL = "incremental"
    REDEPLOY = "redeploy"
    CANCEL = "cancel"


class RunOutcome(str, Enum):
    """Terminal state of a run."""
    SUCCESS = "success"
    SUCCEEDED_WITH_WARNINGS = "succeeded_with_warnings"
    FAILED = "failed"
    CANCELLED = "cancelled"


class EventKind(str, Enum):
    PROGRESS = "progress"
    LOG = "log"
    PROMPT = "prompt"
    OUTCOME = "outcome"


class PromptKind(str, Enum):
    DECISION = "decision"
    CREDENTIAL = "credential"


class PendingPrompt(BaseModel):
    """A suspend point waiting on the operator."""
    kind: PromptKind
    message: str
    choices: list[DeploymentChoice] = Field(default_factory=list)
    existing: list[str] = Field(default_factory=list)
    missing: list[str] = Field(default_factory=list)


class RunEvent(BaseModel):
    """One entry of a run's ordered event stream."""
    seq: int = 0
    kind: EventKind
    message: str = ""
    percent: int | None = None
    is_error: bool = False
    prompt: PendingPrompt | None = None
    outcome: RunOutcome | None = None
    elapsed_seconds: float | None = None
    timestamp: datetime = Field(default_factory=datetime.now)


class RunStatus(BaseModel):
    """Snapshot of a run for polling clients."""
    run_id: str
    kind: RunKind
    lab_name: str
    phase: DeployPhase
    percent: int = 0
    strategy: Strategy | None = None
    outcome: RunOutcome | None = None
    started_at: datetime
    finished_at: datetime | None = None
    elapsed_seconds: float | None = None
    pending_prompt: PendingPrompt | None = None
    log_file: str | None = None


# --- API requests/responses ---

class DeployRequest(BaseModel):
    """Shell -> Agent: deploy a saved lab."""
    incremental: bool = False
    admin_password: SecretStr | None = None
    # If provided, the terminal record is POSTed here when the run ends
    callback_url: str | None = None


class RemoveRequest(BaseModel):
    """Shell -> Agent: tear down a saved lab."""
    callback_url: str | None = None


class DecisionRequest(BaseModel):
    choice: DeploymentChoice


class CredentialRequest(BaseModel):
    password: SecretStr | None = None  # Empty/None declines


class RunAccepted(BaseModel):
    run_id: str
    kind: RunKind
    lab_name: str


class LabSummary(BaseModel):
    name: str
    description: str | None = None
    machine_count: int
    domain_name: str | None = None
    path: str | None = None


class VMActionResponse(BaseModel):
    success: bool
    vm_name: str
    action: str
    error: str | None = None
