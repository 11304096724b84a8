from .json_recovery import ResilientJsonParser, safe_dumps, sanitize_for_json

__all__ = ["ResilientJsonParser", "safe_dumps", "sanitize_for_json"]
