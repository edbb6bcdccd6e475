"""Service layer for the Update Center.

Provides dependency analysis, the activity log, batch persistence, batch
lifecycle orchestration and the progress reconciler, plus the installer
and inventory adapters they talk to.
"""

from update_center.services.activity_log_service import (
    ActivityLogService,
    format_duration,
)
from update_center.services.batch_orchestrator import (
    BatchCreated,
    BatchOptions,
    BatchOrchestrator,
    build_manifest,
)
from update_center.services.batch_store import VALID_TRANSITIONS, BatchStore
from update_center.services.dependency_analyzer import (
    DependencyAnalysis,
    DependencyAnalyzer,
    get_update_level,
)
from update_center.services.installer_client import (
    CicdInstallerClient,
    HandleState,
    InstallerService,
    ProgressSnapshot,
)
from update_center.services.package_inventory import (
    PackageCandidate,
    PackageInventory,
    TableApiPackageInventory,
)
from update_center.services.progress_reconciler import (
    ProgressReconciler,
    ReconciliationResult,
    classify_progress_message,
)

__all__ = [
    "ActivityLogService",
    "format_duration",
    "BatchStore",
    "VALID_TRANSITIONS",
    "BatchOrchestrator",
    "BatchOptions",
    "BatchCreated",
    "build_manifest",
    "DependencyAnalyzer",
    "DependencyAnalysis",
    "get_update_level",
    "InstallerService",
    "CicdInstallerClient",
    "HandleState",
    "ProgressSnapshot",
    "PackageInventory",
    "PackageCandidate",
    "TableApiPackageInventory",
    "ProgressReconciler",
    "ReconciliationResult",
    "classify_progress_message",
]
