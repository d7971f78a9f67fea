"""Internal constants shared across the library."""

# ------------------------------------------------------------------
# Configuration tree keys
# ------------------------------------------------------------------

SERVICES_KEY = "services"
VERSION_KEY = "version"
KIND_KEY = "kind"
DEPENDENCIES_KEY = "dependencies"
LIFECYCLE_KEY = "lifecycle"
CONFIGURATION_KEY = "configuration"

# Lifecycle namespace steps
INSTALL_STEP = "install"
STARTUP_STEP = "startup"
RUN_STEP = "run"
SHUTDOWN_STEP = "shutdown"
BOOTSTRAP_STEP = "bootstrap"

# ------------------------------------------------------------------
# Topics
# ------------------------------------------------------------------

JOBS_NOTIFY_TOPIC = "$aws/things/{thing}/jobs/notify-next"
JOBS_UPDATE_TOPIC = "$aws/things/{thing}/jobs/{job_id}/update"
JOBS_UPDATE_ACCEPTED_TOPIC = "$aws/things/{thing}/jobs/+/update/accepted"
JOBS_UPDATE_REJECTED_TOPIC = "$aws/things/{thing}/jobs/+/update/rejected"
FLEET_STATUS_TOPIC = "$aws/things/{thing}/fleet/health/json"

# Structured log marker emitted after every status hand-off.
STATUS_PUBLISHED_EVENT = "fss-status-update-published"
STATUS_PUBLISHED_MESSAGE = "Status update published to FSS"

# File name of the persisted last-applied desired state (under state_dir).
APPLIED_STATE_FILE = "applied_state.json"

# The agent's own services, registered as built-in components.
DEPLOYMENT_SERVICE = "DeploymentService"
STATUS_SERVICE = "FleetStatusService"


def job_id_from_topic(topic: str) -> str | None:
    """Extract ``{job_id}`` from ``$aws/things/<thing>/jobs/<job_id>/update/...``."""
    parts = topic.split("/")
    try:
        idx = parts.index("jobs")
    except ValueError:
        return None
    if idx + 2 >= len(parts) or parts[idx + 2] != "update":
        return None
    job_id = parts[idx + 1]
    return job_id or None
