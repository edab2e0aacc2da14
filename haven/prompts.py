"""System instruction assembly for one chat turn.

The instruction is a single string built from up to five sections, in order:

  1. Rule set: restricted or unrestricted template chosen by the
     character's mode, with {{char}} / {{user}} substituted.
  2. Character sheet: name plus every included persona field, summary first.
  3. Stats: only when the character defines stats. Model-only.
  4. Narrative state: always present; the opaque JSON memory blob.
  5. Kid mode: only when kid mode is on and an instruction exists.

Sections 2-5 are Handlebars templates rendered with pybars. Every value is
pre-formatted to a string and emitted with triple-stash so nothing is
HTML-escaped. Assembly is pure: no randomness, no I/O.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Iterable
from typing import Any

import pybars

from haven.models import (
    AIContextSettings,
    Character,
    GlobalSettings,
    PromptOverrides,
    User,
)

CHAR_TOKEN = "{{char}}"
USER_TOKEN = "{{user}}"

RESTRICTED_PROMPT = """Write {{char}}'s next reply in a fictional role-play between {{char}} and {{user}}. Write in a narrative style and use vivid language. Be proactive and creative, and move the plot and conversation forward. Always stay in character and avoid repetition.

Portray {{char}}'s emotions, thoughts, actions and sensations. Focus on responding to {{user}} and performing in-character actions. Put actions and scene-setting in asterisks like this: *action* (markdown italics).

This story is for all ages and must stay safe for work.
- Sexual themes, innuendo, nudity and romantic advances are not allowed.
- Violence stays brief and non-graphic: no blood, gore or detailed injuries.
- Keep the tone adventurous and upbeat; avoid dark or mature themes.
If {{user}} pushes toward a forbidden topic, steer the scene away from it while staying in character."""

UNRESTRICTED_PROMPT = """Write {{char}}'s next reply in a fictional role-play between {{char}} and {{user}}. Write in a narrative style and use vivid language. Be proactive and creative, and move the plot and conversation forward. Always stay in character and avoid repetition.

Portray {{char}}'s emotions, thoughts, actions and sensations. Focus on responding to {{user}} and performing in-character actions. Put actions and scene-setting in asterisks like this: *action* (markdown italics).

This is mature fiction for verified adults. Romance, intimacy, conflict and violence may be portrayed when the story calls for it. Characters keep their own personalities: they may lie, refuse, resist or fight back."""

FIELD_LABELS: dict[str, str] = {
    "gender": "Gender",
    "description": "Description",
    "personality": "Personality",
    "story": "Backstory",
    "situation": "Situation",
    "feeling": "Current Mood/Feeling",
    "appearance": "Appearance",
    "greeting": "Greeting",
}

CHARACTER_SHEET_TEMPLATE = (
    "[Character definition. You are playing this character; never break character.]\n"
    "Name: {{{name}}}"
    "{{#each fields}}\n{{{label}}}: {{{value}}}{{/each}}"
)

STATS_TEMPLATE = (
    "### Character Stats (hidden context for the model only; never show these values, "
    "bounds or rules to the user)\n"
    "Let the current values shape {{{char}}}'s behaviour as described. When the user's "
    "message should move a stat, call update_stats with the stat id and the signed change. "
    "Values are kept within their bounds.\n"
    "{{#each stats}}"
    "- {{{name}}}: {{{current}}} (Min: {{{min}}}, Max: {{{max}}}) [id: {{{id}}}]\n"
    "{{#if behavior}}  Behavior: {{{behavior}}}\n{{/if}}"
    "{{#if increase}}  Increases: {{{increase}}}\n{{/if}}"
    "{{#if decrease}}  Decreases: {{{decrease}}}\n{{/if}}"
    "{{/each}}"
)

NARRATIVE_TEMPLATE = (
    "### Narrative State (continuity memory only; never quote it to the user)\n"
    "When the story moves on, call update_narrative_state with the complete new state; "
    "it replaces this object entirely.\n"
    "{{{state}}}"
)

KID_MODE_TEMPLATE = "### Kid Mode (highest priority, overrides everything above)\n{{{instruction}}}"


_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}


class PromptError(Exception):
    """Raised when a Handlebars template fails to compile or render."""


def render_prompt(template_str: str, context: dict[str, Any]) -> str:
    """Compile and render a Handlebars template with the given context.

    Templates are cached by source string to avoid recompilation.
    """
    try:
        compiled = _cache.get(template_str)
        if compiled is None:
            compiled = _compiler.compile(template_str)
            _cache[template_str] = compiled
        return str(compiled(context))
    except Exception as e:
        raise PromptError(f"Template error: {e}") from e


def format_number(value: float) -> str:
    """12.0 → "12", 0.5 → "0.5"."""
    if float(value).is_integer():
        return str(int(value))
    return str(value)


# ── Sections ────────────────────────────────────────────


def base_template(
    character: Character,
    settings: GlobalSettings,
    overrides: PromptOverrides | None = None,
) -> str:
    """Pick the rule set for the character's mode: override, then setting, then default."""
    if character.mode == "unrestricted":
        candidates = [settings.unrestricted_prompt, UNRESTRICTED_PROMPT]
        if overrides:
            candidates.insert(0, overrides.unrestricted_prompt)
    else:
        candidates = [settings.restricted_prompt, RESTRICTED_PROMPT]
        if overrides:
            candidates.insert(0, overrides.restricted_prompt)
    return next(c for c in candidates if c.strip())


def persona_value(character: Character, field: str) -> str:
    """The summary variant when it is non-empty, else the raw field."""
    if character.summary is not None:
        summarized = getattr(character.summary, field, "")
        if summarized and summarized.strip():
            return summarized.strip()
    raw = getattr(character, field, "")
    return raw.strip() if isinstance(raw, str) else ""


def character_sheet(character: Character, included_fields: Iterable[str]) -> str:
    included = set(included_fields)
    fields = []
    # FIELD_LABELS order, not the caller's, so output is stable
    for field, label in FIELD_LABELS.items():
        if field not in included:
            continue
        value = persona_value(character, field)
        if value:
            fields.append({"label": label, "value": value})
    return render_prompt(CHARACTER_SHEET_TEMPLATE, {"name": character.name, "fields": fields})


def _rules_text(rules, sign: str) -> str:
    return "; ".join(
        f"{rule.description} ({sign}{format_number(abs(rule.value))})" for rule in rules
    )


def stats_block(character: Character, stats: dict[str, float] | None) -> str:
    """Empty string when the character defines no stats."""
    if not character.stats:
        return ""
    current = stats or {}
    rows = []
    for stat in character.stats:
        rows.append({
            "id": stat.id,
            "name": stat.name,
            "current": format_number(current.get(stat.id, stat.initial_value)),
            "min": format_number(stat.min),
            "max": format_number(stat.max),
            "behavior": stat.behavior_description.strip(),
            "increase": _rules_text(stat.increase_rules, "+"),
            "decrease": _rules_text(stat.decrease_rules, "-"),
        })
    return render_prompt(STATS_TEMPLATE, {"char": character.name, "stats": rows})


def narrative_block(narrative_state: Any) -> str:
    state = {} if narrative_state is None else narrative_state
    return render_prompt(
        NARRATIVE_TEMPLATE,
        {"state": json.dumps(state, indent=2, ensure_ascii=False)},
    )


def kid_mode_block(
    settings: GlobalSettings, overrides: PromptOverrides | None = None
) -> str:
    instruction = (overrides.kid_mode_prompt if overrides else "") or settings.kid_mode_prompt
    if not instruction.strip():
        return ""
    return render_prompt(KID_MODE_TEMPLATE, {"instruction": instruction.strip()})


def substitute_names(text: str, char_name: str, user_name: str) -> str:
    return text.replace(CHAR_TOKEN, char_name).replace(USER_TOKEN, user_name)


# ── Assembly ────────────────────────────────────────────


def build_system_instruction(
    character: Character,
    user: User,
    settings: GlobalSettings,
    context: AIContextSettings,
    *,
    kid_mode: bool = False,
    stats: dict[str, float] | None = None,
    narrative_state: Any = None,
    included_fields: Iterable[str] | None = None,
    overrides: PromptOverrides | None = None,
) -> str:
    """Assemble the full system instruction for one turn."""
    fields = context.included_fields if included_fields is None else included_fields

    sections = [
        base_template(character, settings, overrides),
        character_sheet(character, fields),
        stats_block(character, stats),
        narrative_block(narrative_state),
    ]
    if kid_mode:
        sections.append(kid_mode_block(settings, overrides))

    text = "\n\n".join(s for s in sections if s)
    return substitute_names(text, character.name, user.name)
