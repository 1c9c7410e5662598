from .ingestor import Ingestor, create_vision
from .planner import IncrementalPlanner
from .types import UnitResult

__all__ = ["IncrementalPlanner", "Ingestor", "UnitResult", "create_vision"]
