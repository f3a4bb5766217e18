"""
Configuration Loader (``invoicing_config.loader``).

Responsibility
--------------
Loads YAML files and parses them into typed dataclasses: payment-terms
templates (``PaymentTermsTemplate``) and invoices module settings
(``InvoicesConfig``).

Architecture position
---------------------
**Config layer** -- infrastructure tooling.  Produces module dataclasses;
MUST NOT be imported by ``invoicing_kernel`` or ``invoicing_engines``.

Invariants enforced
-------------------
* All parse errors raise ``ValueError`` or ``KeyError`` with descriptive
  messages; no silent defaults for required fields.
* Every template's milestone percentages total exactly 100.
* Percentages are parsed through ``str`` into ``Decimal`` -- never float.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys in parsed dict  -> ``KeyError`` propagates.
* Unknown trigger value  -> ``ValueError``.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from invoicing_engines.milestones import HUNDRED, MilestoneTrigger, quantize_percent
from invoicing_kernel.logging_config import get_logger
from invoicing_modules.invoices.config import InvoicesConfig
from invoicing_modules.invoices.models import PaymentTermsTemplate, TemplateMilestone

logger = get_logger("config.loader")

DEFAULT_CONFIG_PATH = Path(__file__).parent / "sets" / "payment_terms.yaml"


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Preconditions:
        - ``path`` must point to an existing, readable YAML file.
    Postconditions:
        - Returns a ``dict`` (possibly empty if the YAML is empty).
    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def parse_percentage(value: Any) -> Decimal:
    """Parse a percentage from YAML (quoted string or int) to a 2-place Decimal."""
    if isinstance(value, float):
        value = repr(value)
    try:
        return quantize_percent(value)
    except InvalidOperation as exc:
        raise ValueError(f"Cannot parse percentage from {value!r}") from exc


def parse_template_milestone(data: dict[str, Any]) -> TemplateMilestone:
    """
    Parse one template milestone.

    Raises:
        KeyError: if ``name``, ``percentage`` or ``trigger`` is missing.
        ValueError: on an unknown trigger or a negative offset.
    """
    offset_days = int(data.get("offset_days", 0))
    if offset_days < 0:
        raise ValueError(f"offset_days cannot be negative in milestone {data['name']!r}")
    return TemplateMilestone(
        name=data["name"],
        percentage=parse_percentage(data["percentage"]),
        trigger=MilestoneTrigger(data["trigger"]),
        offset_days=offset_days,
    )


def parse_template(data: dict[str, Any]) -> PaymentTermsTemplate:
    """
    Parse a ``PaymentTermsTemplate`` from a dict.

    Postconditions:
        - Milestone percentages total exactly 100.
    Raises:
        KeyError: if ``id``, ``name`` or ``milestones`` is missing.
        ValueError: if the template is empty or does not total 100%.
    """
    milestones = tuple(parse_template_milestone(m) for m in data["milestones"])
    template = PaymentTermsTemplate(
        id=str(data["id"]),
        name=data["name"],
        description=data.get("description", ""),
        milestones=milestones,
        is_active=bool(data.get("is_active", True)),
    )
    if not milestones:
        raise ValueError(f"Template {template.id!r} has no milestones")
    if template.total_percentage != HUNDRED:
        raise ValueError(
            f"Template {template.id!r} milestones total {template.total_percentage}%, expected 100%"
        )
    return template


def load_payment_terms_templates(
    path: Path = DEFAULT_CONFIG_PATH,
    include_inactive: bool = False,
) -> list[PaymentTermsTemplate]:
    """Load every template under the ``templates`` key, active ones only by default."""
    data = load_yaml_file(path)
    templates = [parse_template(t) for t in data.get("templates", [])]

    ids = [t.id for t in templates]
    duplicates = sorted({i for i in ids if ids.count(i) > 1})
    if duplicates:
        raise ValueError(f"Duplicate template ids in {path}: {duplicates}")

    if not include_inactive:
        templates = [t for t in templates if t.is_active]
    logger.info("payment_terms_templates_loaded", extra={
        "path": str(path),
        "template_count": len(templates),
    })
    return templates


def load_invoices_config(path: Path = DEFAULT_CONFIG_PATH) -> InvoicesConfig:
    """Build ``InvoicesConfig`` from the ``invoices`` key; absent keys keep defaults."""
    data = load_yaml_file(path)
    section = dict(data.get("invoices") or {})
    if "percentage_tolerance" in section:
        section["percentage_tolerance"] = Decimal(str(section["percentage_tolerance"]))
    return InvoicesConfig.from_dict(section)
