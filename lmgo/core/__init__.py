"""Model catalog and argument resolution."""

from .arguments import resolve_model_args
from .catalog import ModelCatalog, ModelEntry, extract_base_name, scan_models

__all__ = ["ModelCatalog", "ModelEntry", "extract_base_name", "resolve_model_args", "scan_models"]
