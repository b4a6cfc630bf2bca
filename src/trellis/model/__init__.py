"""Entity models loaded from YAML files."""

from trellis.model.loader import ModelError, ModelIssue, ModelLoader, load_model
from trellis.model.model import Model, RecomputeReport

__all__ = [
    "Model",
    "ModelError",
    "ModelIssue",
    "ModelLoader",
    "RecomputeReport",
    "load_model",
]
