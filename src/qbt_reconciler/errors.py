"""
User-friendly error handling for qbt-reconciler
Provides clear, actionable error messages without Python stack traces
"""

import sys
from typing import Optional

from qbt_reconciler.logging import get_logger

logger = get_logger(__name__)


class ReconcilerError(Exception):
    """Base exception for all reconciler errors"""

    def __init__(self, code: str, message: str, details: Optional[dict] = None, fix: Optional[str] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        self.fix = fix
        super().__init__(self.format_error())

    def format_error(self) -> str:
        """Format error message for user display"""
        lines = [self.message]

        if self.details:
            for key, value in self.details.items():
                lines.append(f"  • {key}: {value}")

        if self.fix:
            lines.append(f"  • Fix: {self.fix}")

        return "\n".join(lines)


class AuthenticationError(ReconcilerError):
    """Authentication with qBittorrent failed"""

    def __init__(self, host: str, response_text: Optional[str] = None):
        details = {"Host": host}
        if response_text:
            details["Response"] = response_text

        super().__init__(
            code="AUTH-001",
            message="Cannot connect to qBittorrent",
            details=details,
            fix="Check QBT_RECONCILER_QBITTORRENT_HOST, _USERNAME and _PASSWORD or the instances block in config.yml"
        )


class ConnectionError(ReconcilerError):
    """Cannot reach qBittorrent server"""

    def __init__(self, host: str, original_error: str):
        super().__init__(
            code="CONN-001",
            message="Cannot reach qBittorrent server",
            details={
                "Host": host,
                "Error": str(original_error)
            },
            fix="Check that qBittorrent is running and the host/port are correct"
        )


class APIError(ReconcilerError):
    """qBittorrent API call failed"""

    def __init__(self, endpoint: str, status_code: int, response_text: Optional[str] = None):
        details = {
            "Endpoint": endpoint,
            "Status Code": status_code
        }
        if response_text:
            details["Response"] = response_text[:200]

        super().__init__(
            code="API-001",
            message="qBittorrent API request failed",
            details=details,
            fix="Check qBittorrent logs for more details"
        )


class ConfigurationError(ReconcilerError):
    """Configuration file error"""

    def __init__(self, file_path: str, reason: str):
        super().__init__(
            code="CFG-001",
            message="Cannot load configuration",
            details={
                "File": file_path,
                "Problem": reason
            },
            fix="Check that the configuration file exists and has valid YAML syntax"
        )


class LoggingSetupError(ReconcilerError):
    """Cannot setup file logging"""

    def __init__(self, log_path: str, reason: str, config_dir: Optional[str] = None):
        details = {
            "Log Path": log_path,
            "Problem": reason
        }
        if config_dir:
            details["CONFIG_DIR"] = config_dir

        super().__init__(
            code="LOG-001",
            message="Cannot setup file logging",
            details=details,
            fix="Set LOG_FILE to a writable path, or ensure CONFIG_DIR points to a writable location"
        )


class RuleValidationError(ReconcilerError):
    """Rule configuration is invalid"""

    def __init__(self, rule_name: str, reason: str):
        super().__init__(
            code="RULE-001",
            message="Invalid rule configuration",
            details={
                "Rule": rule_name,
                "Problem": reason
            },
            fix="Check the rule syntax in rules.yml"
        )


class FieldError(ReconcilerError):
    """Unknown field in condition"""

    def __init__(self, field: str, reason: str):
        super().__init__(
            code="FIELD-001",
            message="Invalid condition field",
            details={
                "Field": field,
                "Problem": reason
            },
            fix="Use an upper-case field name such as RATIO, CATEGORY or FREE_SPACE"
        )


class OperatorError(ReconcilerError):
    """Unknown operator in condition"""

    def __init__(self, operator: str, field: str):
        super().__init__(
            code="OP-001",
            message="Unknown operator",
            details={
                "Operator": operator,
                "Field": field
            },
            fix="Use one of EQUAL, NOT_EQUAL, CONTAINS, GREATER_THAN, BETWEEN, MATCHES, EXISTS_IN, ..."
        )


class TransientIOError(ReconcilerError):
    """A batch call against the client failed; the next run retries"""

    def __init__(self, action: str, count: int, reason: str):
        self.action = action
        self.count = count
        self.reason = reason
        super().__init__(
            code="IO-001",
            message=f"Batch action '{action}' failed",
            details={
                "Torrents": count,
                "Error": reason
            },
            fix="The action is retried on the next scheduled run"
        )


class ResourceStateError(ReconcilerError):
    """Torrent state prevents a safe decision (missing files, zero size, unresolved group)"""

    def __init__(self, torrent_hash: str, reason: str):
        self.torrent_hash = torrent_hash
        self.reason = reason
        super().__init__(
            code="STATE-001",
            message="Cannot safely act on torrent",
            details={
                "Hash": torrent_hash,
                "Problem": reason
            }
        )


class FatalRunError(ReconcilerError):
    """Run cannot proceed for a collection"""

    def __init__(self, instance: str, reason: str):
        self.instance = instance
        self.reason = reason
        super().__init__(
            code="RUN-001",
            message="Reconciliation run aborted",
            details={
                "Instance": instance,
                "Problem": reason
            },
            fix="The run is retried on the next scheduled tick"
        )


def handle_errors(func):
    """Decorator for user-friendly error handling"""
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except ReconcilerError as e:
            logger.error(str(e))
            sys.exit(1)
        except KeyboardInterrupt:
            logger.info("\nOperation cancelled by user")
            sys.exit(0)
        except Exception as e:
            logger.error("Unexpected error occurred")
            logger.error(f"  • Error: {type(e).__name__}: {str(e)}")
            logger.error("  • Fix: Please report this issue with the error details above")
            logger.debug("Full stack trace:", exc_info=True)
            sys.exit(1)
    return wrapper
