from .auto_fixer import FixContext, attempt_fix, run_fix_pass
from .health_checks import HEALTH_CHECKS, run_all_health_checks
from .issue_detector import DETECTORS, create_issues, run_detectors
from .report import build_health_report_html, build_health_report_subject, worst_status

__all__ = [
    "DETECTORS",
    "FixContext",
    "HEALTH_CHECKS",
    "attempt_fix",
    "build_health_report_html",
    "build_health_report_subject",
    "create_issues",
    "run_all_health_checks",
    "run_detectors",
    "run_fix_pass",
    "worst_status",
]
