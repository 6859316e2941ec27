"""
Recap generator — a short advisory narrative for the scored listing.

The primary path asks OpenAI for a few sentences built from the scored
targets, schools, environment labels and the user's notes.  Any failure
(no key, an API error, an empty completion) falls back to a deterministic
template, so a recap is always returned.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from openai import OpenAI

from fit_trace import get_trace
from models import (
    EnvironmentSignals,
    EvaluationCancelled,
    ListingInput,
    RecapGenerationFailure,
    ScoredTarget,
    UserPreferences,
)
from providers import TextGenerationProvider
from scoring_config import SCORING_MODEL

logger = logging.getLogger(__name__)

RECAP_MAX_TOKENS = 200
RECAP_TEMPERATURE = 0.3

SOURCE_GENERATED = "generated"
SOURCE_TEMPLATE = "template"

PROMPT_TEMPLATE = """Write a short, warm advisory recap (under 90 words) in second person about how this home fits the buyer.
Mention how close their chosen place types are, the school quality, and the environmental signals they care about.
Do not invent facts, do not use sales language, and do not ask questions.

Address: {address}
Place types (closest distance): {targets}
Schools: {schools}
Mobility focus: {mobility}
Environment: {environment}
Buyer notes: {notes}

Return plain text only."""


class OpenAIRecapClient(TextGenerationProvider):
    name = "openai"

    def __init__(self, api_key: str, model: str = "gpt-4o-mini", timeout: float = 12.0):
        self.api_key = api_key
        self.model = model
        self.client: Optional[OpenAI] = (
            OpenAI(api_key=api_key, timeout=timeout, max_retries=0) if api_key else None
        )

    def complete(self, prompt: str, max_tokens: int, temperature: float) -> str:
        if self.client is None:
            raise RecapGenerationFailure("OPENAI_API_KEY not configured")
        response = self.client.chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": prompt}],
            max_tokens=max_tokens,
            temperature=temperature,
        )
        content = response.choices[0].message.content if response.choices else None
        return (content or "").strip()


@dataclass
class RecapOutcome:
    text: str
    source: str                 # generated | template
    error: str = ""


# =============================================================================
# PROMPT
# =============================================================================

def _target_phrase(scored: ScoredTarget) -> str:
    t = scored.target
    if t.distance_miles is None:
        return f"{t.label}: none found"
    closest = t.places[0].name if t.places else ""
    suffix = f" ({closest})" if closest else ""
    return f"{t.label}: {t.distance_miles:.1f} mi{suffix}"


def _environment_phrase(env: EnvironmentSignals, prefs: UserPreferences) -> str:
    labels = {
        "soundScore": ("noise", env.sound_label),
        "airQuality": ("air quality", env.air_label),
        "stargazeScore": ("night sky", env.stargaze_label),
    }
    wanted = prefs.environmental_prefs or list(labels)
    parts = [
        f"{name} {label}"
        for key, (name, label) in labels.items()
        if key in wanted and label
    ]
    return ", ".join(parts) or "no data"


def build_prompt(
    listing: ListingInput,
    prefs: UserPreferences,
    scored_targets: List[ScoredTarget],
    environment: EnvironmentSignals,
) -> str:
    schools = ", ".join(f"{s.label} {s.score:g}/10" for s in listing.schools) or "no ratings"
    return PROMPT_TEMPLATE.format(
        address=listing.address or "this home",
        targets="; ".join(_target_phrase(s) for s in scored_targets) or "none requested",
        schools=schools,
        mobility=", ".join(prefs.mobility_signals) or "none",
        environment=_environment_phrase(environment, prefs),
        notes=prefs.notes or "none",
    )


# =============================================================================
# TEMPLATE FALLBACK
# =============================================================================

def distance_tier_phrase(scored: ScoredTarget) -> str:
    t = scored.target
    tiers = SCORING_MODEL.recap
    if t.distance_miles is None:
        return f"No nearby {t.label} found."
    if t.distance_miles <= tiers.excellent_miles:
        tier = "excellent"
    elif t.distance_miles <= tiers.convenient_miles:
        tier = "convenient"
    else:
        tier = "longer distance"
    return f"{t.label}: {tier} ({t.distance_miles:.1f} mi)."


def template_recap(
    listing: ListingInput,
    prefs: UserPreferences,
    scored_targets: List[ScoredTarget],
    environment: Optional[EnvironmentSignals] = None,
) -> str:
    """Deterministic recap.

    Address, distance tiers, mobility focus, the signal labels that were
    read, then the user's notes.
    """
    parts = []
    if listing.address:
        parts.append(f"{listing.address}.")
    parts.extend(distance_tier_phrase(s) for s in scored_targets)
    if prefs.mobility_signals:
        parts.append(f"Mobility focus: {', '.join(prefs.mobility_signals)}.")
    if environment is not None:
        for name, label in (
            ("Sound", environment.sound_label),
            ("Air", environment.air_label),
            ("Sky brightness", environment.stargaze_label),
        ):
            if label:
                parts.append(f"{name}: {label}.")
    if prefs.notes:
        parts.append(f"Notes: {prefs.notes}")
    return " ".join(parts)


def generate_recap(
    provider: Optional[TextGenerationProvider],
    listing: ListingInput,
    prefs: UserPreferences,
    scored_targets: List[ScoredTarget],
    environment: EnvironmentSignals,
) -> RecapOutcome:
    """Generated recap when possible, template otherwise.  Never raises
    except for cancellation."""
    trace = get_trace()
    try:
        if provider is None:
            raise RecapGenerationFailure("no text generation provider configured")
        if trace:
            trace.check_cancelled()
        text = (provider.complete(
            build_prompt(listing, prefs, scored_targets, environment),
            max_tokens=RECAP_MAX_TOKENS,
            temperature=RECAP_TEMPERATURE,
        ) or "").strip()
        if not text:
            raise RecapGenerationFailure("empty completion")
    except EvaluationCancelled:
        raise
    except Exception as e:
        failure = e if isinstance(e, RecapGenerationFailure) else RecapGenerationFailure(
            f"{type(e).__name__}: {str(e)[:150]}"
        )
        logger.warning("Recap generation failed, using template: %s", failure)
        if trace:
            trace.record_failure("recap", failure)
        return RecapOutcome(
            text=template_recap(listing, prefs, scored_targets, environment),
            source=SOURCE_TEMPLATE,
            error=type(failure).__name__,
        )

    if trace:
        trace.record_success("recap")
    return RecapOutcome(text=text, source=SOURCE_GENERATED)
