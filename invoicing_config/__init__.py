"""
invoicing_config -- YAML-driven settings for the invoicing packages.

Responsibility:
    Load payment-terms templates and invoices module settings from YAML.
    The defaults shipped in ``sets/payment_terms.yaml`` cover the common
    Standard 30/70, 30/40/30 Split and Net 30 terms.

Architecture position:
    Configuration -- sits above ``invoicing_kernel`` and ``invoicing_modules``.
    The kernel and engines MUST NEVER import from ``invoicing_config``.

Usage:
    from invoicing_config import load_invoices_config, load_payment_terms_templates

    config = load_invoices_config()
    templates = {t.id: t for t in load_payment_terms_templates()}
"""

from invoicing_config.loader import (
    DEFAULT_CONFIG_PATH,
    load_invoices_config,
    load_payment_terms_templates,
    load_yaml_file,
    parse_template,
)

__all__ = [
    "DEFAULT_CONFIG_PATH",
    "load_invoices_config",
    "load_payment_terms_templates",
    "load_yaml_file",
    "parse_template",
]
