"""Configuration and logging setup for stack agglomeration.

Settings are plain dataclasses that can be loaded from a YAML file:

    threshold: 0.2
    priority: probability     # probability | mito | queue | flat
    combiner: delayed         # eager | delayed | queue | flat
    use_mito: true
    mito_mode: true
    mito_threshold: 0.35
    mito_channel: 1
    staged: false
    prepass_threshold: 0.06
    remove_inclusions: true
    log_level: INFO
"""

from __future__ import annotations

import logging
import sys
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from agglomeration import AgglomerationOptions
from merge_combine import CombineMode
from merge_priority import PriorityKind

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

ENGINE_LOGGERS = (
    "region_graph",
    "feature_manager",
    "merge_priority",
    "merge_combine",
    "agglomeration",
    "inclusions",
    "stack",
)


@dataclass
class AgglomerationConfig:
    """Settings for one agglomeration run over a label volume.

    Attributes:
        threshold (float): Merge threshold of the main (or final) pass; 0
            disables agglomeration
        priority (str): Edge selection policy: probability, mito, queue or flat
        combiner (str): Merge reconciliation timing: eager, delayed, queue or flat
        use_mito (bool): Keep mitochondria out of the main pass
        use_edge_weight (bool): Seed priorities from stored edge weights
        mito_mode (bool): Run the mito-aware pass after the main pass
        mito_threshold (float): Threshold of the mito-aware pass
        mito_channel (int, optional): Prediction channel used to classify
            mitochondria
        mito_cutoff (float): Mean mito prediction at/above which a region is
            a mitochondrion
        boundary_channel (int): Prediction channel whose mean is the boundary
            probability
        staged (bool): Run a prepass at ``prepass_threshold``, remove
            inclusions and reseed edge weights before the final pass
        prepass_threshold (float): Threshold of the staged prepass
        remove_inclusions (bool): Run the inclusion pass after agglomeration
        max_stale_pops (int, optional): Bound on consecutive stale candidates
            (default derives from queue size)
        log_level (str): Level of the agglomeration module loggers
    """

    threshold: float = 0.2
    priority: str = PriorityKind.PROBABILITY.value
    combiner: str = CombineMode.DELAYED.value
    use_mito: bool = False
    use_edge_weight: bool = False
    mito_mode: bool = False
    mito_threshold: float = 0.35
    mito_channel: Optional[int] = None
    mito_cutoff: float = 0.5
    boundary_channel: int = 0
    staged: bool = False
    prepass_threshold: float = 0.06
    remove_inclusions: bool = True
    max_stale_pops: Optional[int] = None
    log_level: str = "INFO"

    def validate(self) -> List[str]:
        """Return a list of problems; empty when the configuration is usable."""
        errors = []
        priorities = [k.value for k in PriorityKind]
        combiners = [m.value for m in CombineMode]
        if self.priority not in priorities:
            errors.append(f"priority must be one of {priorities}, got '{self.priority}'")
        if self.combiner not in combiners:
            errors.append(f"combiner must be one of {combiners}, got '{self.combiner}'")
        if self.threshold < 0:
            errors.append(f"threshold must be >= 0, got {self.threshold}")
        if self.mito_threshold < 0:
            errors.append(f"mito_threshold must be >= 0, got {self.mito_threshold}")
        if self.prepass_threshold < 0:
            errors.append(f"prepass_threshold must be >= 0, got {self.prepass_threshold}")
        if self.max_stale_pops is not None and self.max_stale_pops < 1:
            errors.append(f"max_stale_pops must be >= 1, got {self.max_stale_pops}")
        if not isinstance(logging.getLevelName(self.log_level.upper()), int):
            errors.append(f"Unknown log_level '{self.log_level}'")
        return errors

    def check(self) -> "AgglomerationConfig":
        errors = self.validate()
        if errors:
            raise ValueError("Invalid agglomeration config: " + "; ".join(errors))
        return self

    def options(self) -> AgglomerationOptions:
        return AgglomerationOptions(
            use_mito=self.use_mito,
            use_edge_weight=self.use_edge_weight,
            mito_mode=self.mito_mode,
            mito_threshold=self.mito_threshold,
        )

    @property
    def needs_classification(self) -> bool:
        return self.use_mito or self.mito_mode or self.priority == PriorityKind.MITO.value

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AgglomerationConfig":
        """Create a config from a dictionary; unknown keys are rejected."""
        known = set(cls.__dataclass_fields__)
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown config keys: {unknown}")
        return cls(**data).check()

    @classmethod
    def from_yaml(cls, path: PathLike) -> "AgglomerationConfig":
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        logger.debug("Loaded agglomeration config from %s", path)
        return cls.from_dict(data)

    def to_yaml(self, path: PathLike) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.safe_dump(self.to_dict(), f, sort_keys=False)
        return path


def configure_logging(level: str = "INFO", log_path: Optional[PathLike] = None) -> logging.Logger:
    """Attach a console (and optional file) handler to the root logger."""
    root = logging.getLogger()
    root.setLevel(level.upper())
    for handler in list(root.handlers):
        root.removeHandler(handler)

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT)
    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter)
    root.addHandler(console)

    if log_path is not None:
        log_path = Path(log_path)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)
    return root


def apply_log_level(level: str = "INFO") -> None:
    """Set the level of the engine's module loggers; handlers are left alone."""
    numeric = getattr(logging, level.upper())
    for name in ENGINE_LOGGERS:
        logging.getLogger(name).setLevel(numeric)
