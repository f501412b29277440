from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
import importlib.resources
from pathlib import Path
from typing import Any, Mapping

import yaml


@dataclass(frozen=True)
class PipelineConfig:
    weight_tolerance: Decimal = Decimal("0.0001")
    reconciliation_tolerance: Decimal = Decimal("0.005")
    currency_places: int = 2
    max_workers: int = 4

    @property
    def quantum(self) -> Decimal:
        return Decimal(1).scaleb(-self.currency_places)

    @staticmethod
    def from_mapping(raw: Mapping[str, Any]) -> "PipelineConfig":
        raw = raw or {}
        defaults = PipelineConfig()
        return PipelineConfig(
            weight_tolerance=Decimal(str(raw.get("weight_tolerance", defaults.weight_tolerance))),
            reconciliation_tolerance=Decimal(
                str(raw.get("reconciliation_tolerance", defaults.reconciliation_tolerance))
            ),
            currency_places=int(raw.get("currency_places", defaults.currency_places)),
            max_workers=max(1, int(raw.get("max_workers", defaults.max_workers))),
        )

    @staticmethod
    def from_yaml(path: str | Path) -> "PipelineConfig":
        path = Path(path)
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
        return PipelineConfig.from_mapping(raw)


def default_pipeline_config() -> PipelineConfig:
    text = importlib.resources.files("tbmalloc.resources").joinpath("default_pipeline.yaml").read_text(encoding="utf-8")
    return PipelineConfig.from_mapping(yaml.safe_load(text))
