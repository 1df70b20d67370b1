"""
Output validation for generated scene scripts.

Two kinds of problems:
  - forbidden content (greetings / self-introduction, explanatory
    meta-phrases, parenthetical asides) rejects the whole script with a
    ScriptValidationError that lists every violating scene
  - over-budget length is repaired: summarise with a cheaper model, else
    keep whole sentences that fit, else hard-cut

A script that is already compliant comes back unchanged.
"""

import re
import logging
from typing import Callable, Optional

from ..errors import ProviderError, ScriptValidationError

logger = logging.getLogger(__name__)

CHAR_BUDGET = 45  # non-whitespace characters per 8s scene

GREETING_PATTERNS = [
    r"\bhello\b",
    r"\bhi\b[,!]",
    r"\bgood (morning|afternoon|evening)\b",
    r"\bwelcome\b",
    r"\bmy name is\b",
    r"\bI(?:'m| am) your\b",
    r"안녕하세요",
    r"반갑습니다",
    r"저는\s*\S+\s*입니다",
]

META_PATTERNS = [
    r"\bin this (video|presentation|slide|section)\b",
    r"\blet me (explain|introduce|show)\b",
    r"\blet'?s (take a look|look at|dive)\b",
    r"\btoday,? we(?:'ll| will)\b",
    r"이번 (영상|발표|슬라이드)에서",
    r"설명(해 ?)?드리겠습니다",
    r"살펴보겠습니다",
]

ASIDE_PATTERN = re.compile(r"\([^)]*\)|\[[^\]]*\]")

_GREETING = [re.compile(p, re.I) for p in GREETING_PATTERNS]
_META = [re.compile(p, re.I) for p in META_PATTERNS]
_SENTENCE = re.compile(r"[^.!?。]+[.!?。]?")


def count_chars(text: str) -> int:
    return len(re.sub(r"\s", "", text))


def find_violations(text: str) -> list[str]:
    """Names of the forbidden content classes present in ``text``."""
    reasons = []
    if any(p.search(text) for p in _GREETING):
        reasons.append("greeting or self-introduction")
    if any(p.search(text) for p in _META):
        reasons.append("explanatory meta-phrase")
    if ASIDE_PATTERN.search(text):
        reasons.append("parenthetical aside")
    return reasons


def truncate_script(text: str, budget: int = CHAR_BUDGET) -> str:
    """Keep leading whole sentences within budget, else hard-cut."""
    kept = []
    used = 0
    for sentence in _SENTENCE.findall(text):
        sentence = sentence.strip()
        if not sentence:
            continue
        length = count_chars(sentence)
        if used + length > budget:
            break
        kept.append(sentence)
        used += length

    if kept:
        return " ".join(kept)

    out = []
    used = 0
    for ch in text.strip():
        if not ch.isspace():
            if used >= budget:
                break
            used += 1
        out.append(ch)
    return "".join(out).strip()


def fit_to_budget(
    text: str,
    summarize: Optional[Callable[[str, int], str]] = None,
    budget: int = CHAR_BUDGET,
) -> str:
    if count_chars(text) <= budget:
        return text

    if summarize is not None:
        try:
            shorter = summarize(text, budget).strip()
        except ProviderError as e:
            logger.warning(f"Script summarisation failed, truncating instead: {e}")
        else:
            if shorter and count_chars(shorter) <= budget and not find_violations(shorter):
                logger.info(f"Summarised script {count_chars(text)} → {count_chars(shorter)} chars")
                return shorter
            logger.warning(f"Summary still unusable ({count_chars(shorter)} chars), truncating")

    truncated = truncate_script(text, budget)
    logger.warning(f"Truncated script {count_chars(text)} → {count_chars(truncated)} chars: '{truncated}'")
    return truncated


def validate_script(
    scenes: list[dict],
    summarize: Optional[Callable[[str, int], str]] = None,
    budget: int = CHAR_BUDGET,
) -> list[dict]:
    """
    Validate every scene's ``script``.

    Raises:
        ScriptValidationError: listing each scene with forbidden content

    Returns:
        The scenes, with over-budget scripts shortened. Compliant scenes are
        returned as-is.
    """
    violations = []
    for index, scene in enumerate(scenes):
        text = scene.get("script") or ""
        reasons = find_violations(text)
        if not text.strip():
            reasons.append("empty script")
        if reasons:
            violations.append({
                "scene_number": scene.get("scene_number") or scene.get("sceneNumber") or index + 1,
                "script": text,
                "reasons": reasons,
            })
    if violations:
        raise ScriptValidationError(violations)

    validated = []
    for scene in scenes:
        fitted = fit_to_budget(scene["script"], summarize, budget)
        validated.append(scene if fitted == scene["script"] else {**scene, "script": fitted})
    return validated
