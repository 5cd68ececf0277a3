"""Deterministic classification of provider output into harness signals.

Detection is keyword-based and best effort: the vocabulary lives in
``DetectorVocabulary`` so deployments can extend it without code changes.
Precedence is fixed: rate limit, user feedback, work complete, generic error,
then plain ``ok``.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass

from devpilot.harness.models import Classification, Question, Signal

CONDITION_DETECTOR_VERSION = 1
DEFAULT_RATE_LIMIT_BACKOFF_SECONDS = 60.0

_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    r"rate[ _-]?limit",
    r"too many requests",
    r"quota exceeded",
    r"\b429\b",
    r"rate.{0,20}exceeded",
    r"throttl",
    r"session limit",
    r"usage limit reached",
)
_FEEDBACK_HEADING_PATTERNS: tuple[str, ...] = (
    r"i need your input",
    r"input needed",
    r"need (?:your |some )?(?:feedback|clarification)",
    r"questions? for you",
    r"please answer",
    r"waiting for (?:your )?input",
    r"please (?:provide|clarify)",
)
_COMPLETION_PATTERNS: tuple[str, ...] = (
    r"all steps (?:are )?(?:finished|completed?|done)",
    r"workflow (?:is )?complete",
    r"completed successfully",
    r"finished successfully",
    r"analysis complete",
    r"execution finished",
    r"task completed",
    r"all done",
)
_ERROR_PATTERNS: tuple[str, ...] = (
    r"^\s*(?:error|fatal)\b\s*:",
    r"^traceback \(most recent call last\)",
    r"command not found",
    r"unhandled exception",
)

_NUMBER = r"(\d+(?:\.\d+)?)"
_UNIT = r"(milliseconds?|msecs?|ms|seconds?|secs?|s|minutes?|mins?|m|hours?|hrs?|h)?\b"
_RETRY_AFTER_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(rf"(?:try again|retry)(?: after| in)?\s+{_NUMBER}\s*{_UNIT}", re.IGNORECASE),
    re.compile(rf"resets? in\s+{_NUMBER}\s*{_UNIT}", re.IGNORECASE),
    re.compile(rf"wait\s+{_NUMBER}\s*{_UNIT}", re.IGNORECASE),
    re.compile(rf"{_NUMBER}\s*{_UNIT}\s+until (?:the )?reset", re.IGNORECASE),
    re.compile(rf"retry-after:\s*{_NUMBER}\s*{_UNIT}", re.IGNORECASE),
)
_QUESTION_LINE = re.compile(r"^\s*(\d+)[.)]\s+(.+?)\s*$")
_OPTIONAL_MARKER = re.compile(r"\(\s*optional\s*\)", re.IGNORECASE)
_REQUIRED_MARKER = re.compile(r"\(\s*required\s*\)", re.IGNORECASE)
_UNIT_SECONDS = {"s": 1.0, "m": 60.0, "h": 3600.0}


@dataclass(frozen=True, slots=True)
class DetectorVocabulary:
    """Regex pattern sets used by the detector, matched case-insensitively."""

    rate_limit: tuple[str, ...] = _RATE_LIMIT_PATTERNS
    feedback_headings: tuple[str, ...] = _FEEDBACK_HEADING_PATTERNS
    completion: tuple[str, ...] = _COMPLETION_PATTERNS
    error: tuple[str, ...] = _ERROR_PATTERNS

    def extended(
        self,
        *,
        rate_limit: Iterable[str] = (),
        feedback_headings: Iterable[str] = (),
        completion: Iterable[str] = (),
    ) -> DetectorVocabulary:
        """Return a vocabulary with extra literal phrases appended."""

        return DetectorVocabulary(
            rate_limit=self.rate_limit + tuple(re.escape(item) for item in rate_limit),
            feedback_headings=self.feedback_headings
            + tuple(re.escape(item) for item in feedback_headings),
            completion=self.completion + tuple(re.escape(item) for item in completion),
            error=self.error,
        )


class ConditionDetector:
    """Classify raw provider output; pure and safe to call repeatedly."""

    def __init__(
        self,
        vocabulary: DetectorVocabulary | None = None,
        *,
        default_backoff_seconds: float = DEFAULT_RATE_LIMIT_BACKOFF_SECONDS,
    ) -> None:
        self.vocabulary = vocabulary or DetectorVocabulary()
        self.default_backoff_seconds = default_backoff_seconds
        self._rate_limit = _compile(self.vocabulary.rate_limit)
        self._feedback_headings = _compile(self.vocabulary.feedback_headings)
        self._completion = _compile(self.vocabulary.completion)
        self._error = _compile(self.vocabulary.error, multiline=True)

    def classify(
        self,
        output: str | None,
        *,
        exit_status: int | None = 0,
        remaining_steps: int | None = None,
    ) -> Classification:
        """Return exactly one primary signal for the response."""

        text = output or ""
        message = _excerpt(text)

        pattern = _first_match(text, self._rate_limit)
        if pattern is not None:
            return Classification(
                signal=Signal.RATE_LIMITED,
                matched_rule="rate_limit",
                matched_pattern=pattern,
                retry_after_seconds=self.extract_retry_after(text),
                message=message,
            )

        feedback = self._extract_questions(text)
        if feedback is not None:
            heading, questions = feedback
            return Classification(
                signal=Signal.NEEDS_USER_FEEDBACK,
                matched_rule="feedback_questions",
                matched_pattern=heading,
                questions=questions,
                message=message,
            )

        pattern = _first_match(text, self._completion)
        if pattern is not None and remaining_steps == 0:
            return Classification(
                signal=Signal.WORK_COMPLETE,
                matched_rule="completion",
                matched_pattern=pattern,
                message=message,
            )

        if exit_status not in (None, 0):
            return Classification(
                signal=Signal.GENERIC_ERROR,
                matched_rule="exit_status",
                matched_pattern=str(exit_status),
                message=message or f"exit status {exit_status}",
            )

        pattern = _first_match(text, self._error)
        if pattern is not None:
            return Classification(
                signal=Signal.GENERIC_ERROR,
                matched_rule="error_vocabulary",
                matched_pattern=pattern,
                message=message,
            )

        return Classification(signal=Signal.OK, matched_rule="fallback_ok", message=message)

    def extract_retry_after(self, text: str) -> float:
        for pattern in _RETRY_AFTER_PATTERNS:
            match = pattern.search(text)
            if match is None:
                continue
            value = float(match.group(1))
            unit = (match.group(2) or "s").lower()
            if unit.startswith(("ms", "milli")):
                return value / 1000.0
            return value * _UNIT_SECONDS.get(unit[0], 1.0)
        return self.default_backoff_seconds

    def _extract_questions(self, text: str) -> tuple[str, list[Question]] | None:
        lines = text.splitlines()
        for index, line in enumerate(lines):
            heading = _first_match(line, self._feedback_headings)
            if heading is None:
                continue
            questions = _numbered_questions(lines[index + 1 :])
            if questions:
                return heading, questions
        return None


def _numbered_questions(lines: list[str]) -> list[Question]:
    questions: list[Question] = []
    for line in lines:
        if not line.strip():
            continue
        match = _QUESTION_LINE.match(line)
        if match is None:
            if questions:
                break
            continue
        raw_text = match.group(2)
        required = _OPTIONAL_MARKER.search(raw_text) is None
        text = _REQUIRED_MARKER.sub("", _OPTIONAL_MARKER.sub("", raw_text)).strip()
        questions.append(Question(number=int(match.group(1)), text=text, required=required))
    return questions


def _compile(patterns: tuple[str, ...], *, multiline: bool = False) -> list[re.Pattern[str]]:
    flags = re.IGNORECASE | (re.MULTILINE if multiline else 0)
    return [re.compile(pattern, flags) for pattern in patterns]


def _first_match(haystack: str, patterns: list[re.Pattern[str]]) -> str | None:
    for pattern in patterns:
        if pattern.search(haystack):
            return pattern.pattern
    return None


def _excerpt(text: str, limit: int = 300) -> str:
    compact = " ".join(text.split())
    if len(compact) <= limit:
        return compact
    return compact[: limit - 3] + "..."
