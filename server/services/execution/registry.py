"""Handler registry - node type to async handler dispatch table."""

from typing import Dict, List, Optional, Tuple

from core.logging import get_logger
from services.execution.types import Handler, HandlerMetadata

logger = get_logger(__name__)


class HandlerRegistry:
    """Explicit registry populated once at startup.

    Registering an existing type replaces the previous handler.
    """

    def __init__(self):
        self._handlers: Dict[str, Tuple[HandlerMetadata, Handler]] = {}

    def register(self, metadata: HandlerMetadata, handler: Handler) -> None:
        if metadata.type in self._handlers:
            logger.warning("Overwriting existing handler", node_type=metadata.type)
        self._handlers[metadata.type] = (metadata, handler)
        logger.debug("Registered handler", node_type=metadata.type, version=metadata.version)

    def unregister(self, node_type: str) -> bool:
        return self._handlers.pop(node_type, None) is not None

    def get(self, node_type: str) -> Optional[Handler]:
        entry = self._handlers.get(node_type)
        return entry[1] if entry else None

    def has(self, node_type: str) -> bool:
        return node_type in self._handlers

    def metadata_for(self, node_type: str) -> Optional[HandlerMetadata]:
        entry = self._handlers.get(node_type)
        return entry[0] if entry else None

    def list(self) -> List[HandlerMetadata]:
        return [metadata for metadata, _ in self._handlers.values()]

    def __len__(self) -> int:
        return len(self._handlers)

    def __contains__(self, node_type: str) -> bool:
        return self.has(node_type)
