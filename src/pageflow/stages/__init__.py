"""Registry of pipeline stages."""

from __future__ import annotations

from typing import Dict, List, Optional

from pageflow.errors import UnknownStageError
from pageflow.scheduling.recrawl import RecrawlPolicy

from .attributes import AttributesStage
from .base import GeneratorStage, StageDefinition
from .crawl import CrawlStage
from .product_type import ProductTypeStage
from .recap import RecapStage


class StageRegistry:
    """Name -> definition lookup for the stages a runner can execute."""

    def __init__(self, stages: List[StageDefinition]) -> None:
        self._stages: Dict[str, StageDefinition] = {stage.name: stage for stage in stages}

    def get(self, name: str) -> StageDefinition:
        try:
            return self._stages[name]
        except KeyError:
            raise UnknownStageError(name, self.names()) from None

    def names(self) -> List[str]:
        return list(self._stages)

    def __contains__(self, name: object) -> bool:
        return name in self._stages

    def __iter__(self):
        return iter(self._stages.values())


def default_registry(policy: Optional[RecrawlPolicy] = None, new_only: bool = False) -> StageRegistry:
    return StageRegistry([CrawlStage(policy, new_only=new_only), ProductTypeStage(), RecapStage(), AttributesStage()])


__all__ = [
    "AttributesStage",
    "CrawlStage",
    "GeneratorStage",
    "ProductTypeStage",
    "RecapStage",
    "StageDefinition",
    "StageRegistry",
    "default_registry",
]
