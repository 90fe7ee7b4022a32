from .cancellation import CancellationSignal, CancelReason
from .credentials import CredentialService
from .store import CheckStore
from .threshold import evaluate_threshold
from .powershell import PowerShellService
from .vsphere import VSphereRestService
from .engines import build_engine_registry
from .execution import CheckExecutionService, create_execution_service, summarize_results
from .history import HistoryService
from .notification import NotificationService
from .scheduler import SchedulerService
