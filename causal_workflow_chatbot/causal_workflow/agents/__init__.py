from typing import Any, Dict, Iterable, Optional

from ..models import Stage
from .base import NO_CODE, BaseStageAgent
from .dag import DAGAgent
from .eda import EDAAgent
from .estimation import EstimationAgent
from .formulation import FormulationAgent
from .identification import IdentificationAgent

AGENT_CLASSES = (FormulationAgent, EDAAgent, DAGAgent, IdentificationAgent, EstimationAgent)


def build_agent_registry(
    completion: Any,
    stages: Optional[Iterable[Stage]] = None,
) -> Dict[Stage, BaseStageAgent]:
    """One agent per stage; pass ``stages`` to register a subset."""
    wanted = set(stages) if stages is not None else None
    return {
        cls.stage: cls(completion)
        for cls in AGENT_CLASSES
        if wanted is None or cls.stage in wanted
    }


__all__ = [
    "AGENT_CLASSES",
    "NO_CODE",
    "BaseStageAgent",
    "DAGAgent",
    "EDAAgent",
    "EstimationAgent",
    "FormulationAgent",
    "IdentificationAgent",
    "build_agent_registry",
]
