from __future__ import annotations

from moldplan.data.schema.core_schema import ensure_schema as ensure_core_schema
from moldplan.data.schema.scheduling_schema import ensure_schema as ensure_scheduling_schema

__all__ = ["ensure_core_schema", "ensure_scheduling_schema"]
