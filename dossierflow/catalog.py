"""Product step catalogs: step definitions, field definitions and YAML loading."""

from __future__ import annotations

import logging
import re
from enum import Enum
from pathlib import Path
from typing import Any, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from .constants import DEFAULT_ADMIN_STEP_ROLE, DOSSIER_STATUSES
from .errors import CatalogError

logger = logging.getLogger(__name__)


class StepType(str, Enum):
    CLIENT = "CLIENT"
    ADMIN = "ADMIN"
    FORMATION = "FORMATION"
    TIMER = "TIMER"


class FieldType(str, Enum):
    TEXT = "text"
    TEXTAREA = "textarea"
    NUMBER = "number"
    EMAIL = "email"
    PHONE = "phone"
    DATE = "date"
    SELECT = "select"
    RADIO = "radio"
    CHECKBOX = "checkbox"
    FILE = "file"


class FieldOption(BaseModel):
    value: str
    label: str = ""


class FieldDef(BaseModel):
    """A form field a CLIENT step asks for."""

    key: str
    label: str = ""
    field_type: FieldType = FieldType.TEXT
    required: bool = False
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    min_value: Optional[float] = None
    max_value: Optional[float] = None
    pattern: Optional[str] = None
    options: List[FieldOption] = Field(default_factory=list)
    default_value: Optional[str] = None

    @field_validator("pattern")
    @classmethod
    def _compile_pattern(cls, value: Optional[str]) -> Optional[str]:
        if value is not None:
            try:
                re.compile(value)
            except re.error as exc:
                raise ValueError(f"invalid pattern {value!r}: {exc}") from exc
        return value

    @property
    def option_values(self) -> set[str]:
        return {o.value for o in self.options}


class Step(BaseModel):
    """One catalog step of a product workflow.

    Only the configuration block matching ``type`` may be populated.
    """

    id: str
    code: str
    label: str = ""
    position: int
    type: StepType
    fields: List[FieldDef] = Field(default_factory=list)
    required_document_types: List[str] = Field(default_factory=list)
    formation_id: Optional[str] = None
    timer_delay_minutes: Optional[int] = None
    admin_role: str = DEFAULT_ADMIN_STEP_ROLE
    dossier_status_on_approval: Optional[str] = None

    @model_validator(mode="after")
    def _check_configuration_block(self) -> "Step":
        if self.fields and self.type != StepType.CLIENT:
            raise ValueError(f"step {self.code}: fields are only allowed on CLIENT steps")
        if self.required_document_types and self.type not in (
            StepType.CLIENT,
            StepType.ADMIN,
        ):
            raise ValueError(
                f"step {self.code}: document types are only allowed on CLIENT or ADMIN steps"
            )
        if self.type == StepType.FORMATION and not self.formation_id:
            raise ValueError(f"step {self.code}: FORMATION steps need a formation_id")
        if self.formation_id and self.type != StepType.FORMATION:
            raise ValueError(f"step {self.code}: formation_id is only allowed on FORMATION steps")
        if self.timer_delay_minutes is not None:
            if self.type != StepType.TIMER:
                raise ValueError(
                    f"step {self.code}: timer_delay_minutes is only allowed on TIMER steps"
                )
            if self.timer_delay_minutes < 0:
                raise ValueError(f"step {self.code}: timer_delay_minutes must be >= 0")
        if (
            self.dossier_status_on_approval
            and self.dossier_status_on_approval not in DOSSIER_STATUSES
        ):
            raise ValueError(
                f"step {self.code}: unknown dossier status {self.dossier_status_on_approval!r}"
            )
        return self

    def field(self, key: str) -> Optional[FieldDef]:
        return next((f for f in self.fields if f.key == key), None)


class StepCatalog(BaseModel):
    """Ordered steps configured for a product."""

    product_id: str
    steps: List[Step] = Field(default_factory=list)

    @model_validator(mode="after")
    def _order_and_check(self) -> "StepCatalog":
        self.steps = sorted(self.steps, key=lambda s: s.position)
        positions = [s.position for s in self.steps]
        if len(set(positions)) != len(positions):
            raise ValueError(f"catalog {self.product_id}: step positions must be unique")
        ids = [s.id for s in self.steps]
        if len(set(ids)) != len(ids):
            raise ValueError(f"catalog {self.product_id}: step ids must be unique")
        for index, step in enumerate(self.steps):
            if step.type != StepType.TIMER:
                continue
            if index == 0:
                raise ValueError(f"catalog {self.product_id}: a TIMER step cannot come first")
            if index == len(self.steps) - 1:
                raise ValueError(f"catalog {self.product_id}: a TIMER step cannot come last")
            if self.steps[index - 1].type == StepType.TIMER:
                raise ValueError(
                    f"catalog {self.product_id}: TIMER step {step.code} follows another TIMER"
                )
        return self

    @classmethod
    def from_dict(cls, product_id: str, data: dict[str, Any]) -> "StepCatalog":
        """Build a catalog from a parsed YAML/JSON mapping with a ``steps`` list."""
        try:
            return cls(product_id=product_id, steps=data.get("steps", []))
        except ValueError as exc:
            raise CatalogError(str(exc)) from exc

    def index_of(self, step_id: str) -> int:
        for index, step in enumerate(self.steps):
            if step.id == step_id:
                return index
        raise CatalogError(f"Step {step_id} is not part of catalog {self.product_id}")

    def is_last(self, index: int) -> bool:
        return index >= len(self.steps) - 1


def load_catalog(path: str | Path, product_id: Optional[str] = None) -> StepCatalog:
    """Load a catalog from a YAML file.

    The file holds a ``steps`` list and optionally a ``product_id``; an explicit
    ``product_id`` argument wins over the file's value.
    """

    with open(path) as f:
        data = yaml.safe_load(f) or {}
    product = product_id or data.get("product_id")
    if not product:
        raise CatalogError(f"No product_id given for catalog {path}")
    catalog = StepCatalog.from_dict(product, data)
    logger.info(f"Loaded catalog for product {product} with {len(catalog.steps)} steps")
    return catalog
