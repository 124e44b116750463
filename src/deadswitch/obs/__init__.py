from deadswitch.obs.logging import SafeLogger, get_logger, run_id, safe_log

__all__ = ["SafeLogger", "get_logger", "run_id", "safe_log"]
