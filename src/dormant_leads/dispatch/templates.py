"""Nudge message templates."""

from __future__ import annotations

DEFAULT_TEMPLATE = "default"
DEFAULT_VARIANT = "A"

TEMPLATES: dict[str, dict[str, str]] = {
    "default": {
        "A": "Bonjour ! Orange vous propose une offre pour votre ancien téléphone. Estimation gratuite : {url}",
        "B": "Votre téléphone vaut de l'argent ! Découvrez combien avec Orange : {url}",
        "C": "Ne jetez pas votre ancien mobile ! Orange vous le reprend. Cliquez ici : {url}",
        "D": "Offre spéciale Orange : faites estimer votre téléphone gratuitement {url}",
    },
}


def build_message(template_id: str | None, variant: str | None, url: str) -> str:
    """Render a template variant; unknown ids fall back to default/A."""
    template = TEMPLATES.get(template_id or DEFAULT_TEMPLATE, TEMPLATES[DEFAULT_TEMPLATE])
    text = template.get(variant or DEFAULT_VARIANT, template[DEFAULT_VARIANT])
    return text.format(url=url)
