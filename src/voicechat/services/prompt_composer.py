"""Compose provider-neutral generation requests from a voice profile.

Every populated preference becomes an imperative rule; empty fields are left
out. Ordinal usage levels go through fixed tables, and anything that does not
map (an unknown label, an out-of-range slider) gets the moderate directive
instead of raising.
"""

from __future__ import annotations

import re
from typing import Dict, List, Optional, Sequence

from ..domain.chat_models import ComposedRequest
from ..domain.voice_models import LevelValue, ScoredFragment, VoiceProfile, WritingSample
from .retrieval import build_voice_context

DEFAULT_SYSTEM_INSTRUCTION = "You are a helpful AI assistant."

LEVEL_LABELS = ("Never", "Sparingly", "Sometimes", "Often", "As much as possible")
MODERATE_LEVEL = 2

BOLD_DIRECTIVES = (
    "Never use bold text or emphasis formatting",
    "Use **bold text** sparingly for only the most important concepts",
    "Use **bold text** selectively for important concepts",
    "Use **bold text** frequently for emphasis and key points",
    "Use **bold text** extensively throughout for maximum emphasis",
)

SPACING_DIRECTIVES = (
    "Write in compact, dense paragraphs with minimal line breaks",
    "Use tight spacing with mostly dense paragraphs",
    "Use moderate spacing with balanced paragraph lengths",
    "Use generous spacing with shorter paragraphs and frequent line breaks",
    "Use maximum spacing with very short paragraphs and extensive line breaks",
)

EMOJI_DIRECTIVES = (
    "Never use emojis - maintain purely text-based communication",
    "Use emojis very sparingly and only for essential context",
    "Use emojis occasionally when they add meaningful context",
    "Use emojis frequently to enhance expression and engagement",
    "Use emojis extensively throughout responses for maximum expression",
)

LIST_DIRECTIVES = (
    "Write in flowing paragraphs - avoid bullet points and lists completely",
    "Prefer paragraphs, use lists only when absolutely necessary",
    "Balance paragraphs with lists based on content type",
    "Favor lists and bullet points over paragraphs when possible",
    "Structure information as bullet points and numbered lists whenever possible",
)

MARKUP_PLAIN = "Use plain text with minimal formatting"
MARKUP_MODERATE = "Use moderate formatting with basic markdown elements"
MARKUP_RICH = "Use rich formatting: headers, code blocks, tables, and structured markup"

CLOSING_INSTRUCTION = (
    "CRITICAL INSTRUCTION: Apply all of these guidelines consistently in every response. "
    "This is your core communication identity."
)


def level_index(value: Optional[LevelValue]) -> Optional[int]:
    """Map a slider value or label to 0..4; ``None`` stays ``None``.

    Values outside the table resolve to the moderate midpoint.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return MODERATE_LEVEL
    if isinstance(value, int):
        return value if 0 <= value < len(LEVEL_LABELS) else MODERATE_LEVEL
    text = str(value).strip().lower()
    if not text:
        return None
    if text.isdigit():
        return level_index(int(text))
    # Longest label first so "As much as possible" is not read as something shorter.
    for idx in sorted(range(len(LEVEL_LABELS)), key=lambda i: -len(LEVEL_LABELS[i])):
        if LEVEL_LABELS[idx].lower() in text:
            return idx
    return MODERATE_LEVEL


def _markup_directive(value: Optional[LevelValue]) -> Optional[str]:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    try:
        level = int(value)
    except (TypeError, ValueError):
        return MARKUP_MODERATE
    if level <= 1:
        return MARKUP_PLAIN
    if level >= 4:
        return MARKUP_RICH
    return MARKUP_MODERATE


def _bullets(rules: Sequence[str]) -> str:
    return "\n".join(f"• {rule}" for rule in rules)


def _clean_list(values: Optional[Sequence[str]]) -> List[str]:
    return [str(v).strip() for v in (values or []) if str(v or "").strip()]


def formatting_rules(profile: VoiceProfile) -> List[str]:
    rules: List[str] = []
    for value, table in (
        (profile.bold_usage, BOLD_DIRECTIVES),
        (profile.line_spacing, SPACING_DIRECTIVES),
        (profile.emoji_usage, EMOJI_DIRECTIVES),
        (profile.list_vs_paragraphs, LIST_DIRECTIVES),
    ):
        idx = level_index(value)
        if idx is not None:
            rules.append(table[idx])
    markup = _markup_directive(profile.markup_style)
    if markup:
        rules.append(markup)
    return rules


def analyze_writing_samples(samples: Sequence[WritingSample]) -> str:
    """Describe recurring habits across writing samples in one line."""
    total = "\n\n".join(s.content for s in samples)
    words = len(total.split())
    if not words:
        return "maintains consistent writing style across samples"
    traits: List[str] = []

    sentences = [s for s in re.split(r"[.!?]+", total) if s.strip()]
    avg_sentence = words / len(sentences) if sentences else 0
    if avg_sentence < 10:
        traits.append("uses short, punchy sentences")
    elif avg_sentence > 20:
        traits.append("writes in long, complex sentences")
    else:
        traits.append("uses balanced sentence lengths")

    if total.count("!") > words / 100:
        traits.append("uses exclamation points frequently for emphasis")
    if total.count("?") > words / 150:
        traits.append("engages readers with questions")
    if len(re.findall(r"—|--", total)) > words / 200:
        traits.append("uses dashes for emphasis and breaks")
    if re.search(r"\*\*[^*]+\*\*", total):
        traits.append("uses bold text for emphasis")
    if re.search(r"^\s*(?:[-*•]|\d+\.)\s", total, flags=re.MULTILINE):
        traits.append("structures information with lists and bullet points")
    if len(re.findall(r"\b[A-Z]{2,}\b", total)) > words / 100:
        traits.append("uses capitalized words for emphasis")

    paragraphs = [p for p in re.split(r"\n\s*\n", total) if p.strip()]
    avg_paragraph = words / len(paragraphs) if paragraphs else 0
    if avg_paragraph < 30:
        traits.append("writes in short, concise paragraphs")
    elif avg_paragraph > 100:
        traits.append("writes in long, detailed paragraphs")

    lowered = total.lower()
    formal = sum(1 for w in ("however", "therefore", "furthermore", "consequently", "nevertheless") if w in lowered)
    casual = sum(1 for w in ("yeah", "gonna", "wanna", "kinda", "sorta", "hey", "cool", "awesome") if w in lowered)
    if formal > casual:
        traits.append("maintains professional vocabulary")
    elif casual > formal:
        traits.append("uses casual, conversational language")

    return ", ".join(traits)


def build_system_instruction(
    profile: Optional[VoiceProfile],
    fragments: Optional[Sequence[ScoredFragment]] = None,
    samples: Optional[Sequence[WritingSample]] = None,
) -> str:
    sections: List[str] = []
    if profile is None:
        sections.append(DEFAULT_SYSTEM_INSTRUCTION)
    else:
        sections.append(f'You are an AI assistant embodying the voice profile "{profile.name}".')
        if profile.description:
            sections.append(f"Context: {profile.description}")
        if profile.purpose:
            sections.append(f"PRIMARY OBJECTIVE: {profile.purpose}")

        tone_rules: List[str] = []
        tones = _clean_list(profile.tone_options)
        if tones:
            tone_rules.append(f"Maintain these tones: {', '.join(tones)}")
        custom = _clean_list(profile.custom_tones)
        if custom:
            tone_rules.append(f"Custom tone requirements: {', '.join(custom)}")
        if profile.moral_tone:
            tone_rules.append(f"Moral perspective: {profile.moral_tone}")
        if profile.humor_level:
            tone_rules.append(f"Humor approach: {profile.humor_level}")
        if tone_rules:
            sections.append(f"TONE REQUIREMENTS:\n{_bullets(tone_rules)}")

        rules = formatting_rules(profile)
        if rules:
            sections.append(f"FORMATTING RULES:\n{_bullets(rules)}")

        if profile.structure_preferences:
            sections.append(f"CONTENT STRUCTURE: {profile.structure_preferences}")
        if profile.preferred_stance:
            sections.append(f"COMMUNICATION STANCE: {profile.preferred_stance}")
        boundaries = _clean_list(profile.ethical_boundaries)
        if boundaries:
            sections.append(f"ETHICAL BOUNDARIES: Strictly respect these limits - {', '.join(boundaries)}")
        if samples:
            sections.append(
                f"WRITING STYLE ANALYSIS: Based on {len(samples)} uploaded samples - {analyze_writing_samples(samples)}"
            )

    if fragments:
        sections.append(
            "VOICE CONTEXT (excerpts from the user's own writing; mirror their tone, vocabulary and sentence structure):\n"
            + build_voice_context(list(fragments))
        )

    if profile is not None:
        sections.append(CLOSING_INSTRUCTION)
    return "\n\n".join(sections)


def compose_request(
    profile: Optional[VoiceProfile],
    fragments: Optional[Sequence[ScoredFragment]],
    history: Sequence[Dict[str, str]],
    user_text: str,
    samples: Optional[Sequence[WritingSample]] = None,
) -> ComposedRequest:
    """Build the request every provider adapter consumes.

    ``history`` is the prior conversation as ``{role, content}`` dicts. Style
    fragments only ever appear in the system instruction, never in
    ``messages``, so they are not re-fed as conversation turns later.
    """
    messages: List[Dict[str, str]] = []
    for m in history:
        role = m.get("role") or "user"
        if role not in ("system", "user", "assistant"):
            role = "user"
        content = m.get("content") or ""
        if not content.strip():
            continue
        messages.append({"role": role, "content": content})
    messages.append({"role": "user", "content": user_text})
    return ComposedRequest(
        system_instruction=build_system_instruction(profile, fragments, samples),
        messages=messages,
    )
