from .page_store import PageStore
from .request_log import AiRequestLogger, sanitize_payload
from .schema import create_schema, metadata

__all__ = ["AiRequestLogger", "PageStore", "create_schema", "metadata", "sanitize_payload"]
