from spendgate.models.collaborators import Intent, ExecutionPlan, WalletConfig  # noqa: F401
from spendgate.models.approval import ApprovalEntry  # noqa: F401
from spendgate.models.signing import SigningRequest, SigningActivity, SettlementRecord  # noqa: F401
from spendgate.models.audit import AuditLog  # noqa: F401
from spendgate.models.scheduled_task import ScheduledTask  # noqa: F401
