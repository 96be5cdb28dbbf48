"""Infrastructure modules for riskwatch"""

from .alerting import AlertService, AlertSeverity  # noqa: F401
from .metrics import MetricsRecorder, CycleStats  # noqa: F401
from .healthcheck import HealthServer  # noqa: F401

__all__ = [
	"AlertService",
	"AlertSeverity",
	"MetricsRecorder",
	"CycleStats",
	"HealthServer",
]
