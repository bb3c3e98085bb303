from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import ClassVar, Iterable, Iterator, Sequence, Union

from opentelemetry.sdk.trace import sampling
from opentelemetry.sdk.trace.sampling import Decision
from opentelemetry.util import types as otel_types

from ..exceptions import TraceSiftConfigError
from .constants import (
    ATTRIBUTES_SAMPLING_RATE_KEY,
    ATTRIBUTES_SAMPLING_REASON_KEY,
    ATTRIBUTES_SAMPLING_RULE_KEY,
    DEFAULT_SAMPLE_RATE,
    MAX_UINT32,
    TRACE_ID_HASH_HEX_DIGITS,
    SamplingMode,
)
from .span import get_status_code

_HEX_SUFFIX_RE = re.compile(rf'[0-9a-fA-F]{{{TRACE_ID_HASH_HEX_DIGITS}}}')


@dataclass(frozen=True)
class SamplingRule:
    """A path pattern and the rate at which matching traces are kept.

    `pattern` is searched for in the request path, so use anchors like `^` and `$` to control how strict it is.
    """

    pattern: re.Pattern[str]
    rate: float
    tag: str

    def __init__(self, pattern: str | re.Pattern[str], rate: float, tag: str) -> None:
        if isinstance(pattern, str):
            try:
                pattern = re.compile(pattern)
            except re.error as e:
                raise TraceSiftConfigError(f'Invalid pattern for sampling rule {tag!r}: {e}') from e
        if isinstance(rate, bool) or not isinstance(rate, (int, float)) or not (0.0 <= rate <= 1.0):
            raise TraceSiftConfigError(f'Sampling rate for rule {tag!r} must be between 0 and 1, got {rate!r}')
        object.__setattr__(self, 'pattern', pattern)
        object.__setattr__(self, 'rate', float(rate))
        object.__setattr__(self, 'tag', tag)

    def matches(self, path: str) -> bool:
        return self.pattern.search(path) is not None


class RuleTable(Sequence[SamplingRule]):
    """An ordered, immutable list of sampling rules where the first match wins.

    Rules are never reordered: an earlier catch-all rule shadows a later, more specific one.
    """

    def __init__(self, rules: Iterable[SamplingRule] = ()) -> None:
        self._rules = tuple(rules)
        for rule in self._rules:
            if not isinstance(rule, SamplingRule):
                raise TraceSiftConfigError(f'Expected a SamplingRule, got {rule!r}')

    def match(self, path: str) -> SamplingRule | None:
        for rule in self._rules:
            if rule.matches(path):
                return rule
        return None

    def __getitem__(self, index: int) -> SamplingRule:  # type: ignore[override]
        return self._rules[index]

    def __len__(self) -> int:
        return len(self._rules)

    def __iter__(self) -> Iterator[SamplingRule]:
        return iter(self._rules)

    def __repr__(self) -> str:
        return f'RuleTable({list(self._rules)!r})'


DEFAULT_RULES = RuleTable(
    [
        SamplingRule(r'^/api/v1/auth/', 0.1, 'auth'),
        SamplingRule(r'^/pii-service/', 0.1, 'pii'),
        SamplingRule(r'^/api/v1/reports/', 0.5, 'reports'),
        SamplingRule(r'^/p/', 0.005, 'homepage'),
        SamplingRule(r'^/m/', 0.005, 'marshmallow'),
        SamplingRule(r'^/api/v1/public/', 0.005, 'public-api'),
        SamplingRule(r'^/health', 0, 'health'),
        SamplingRule(r'^/metrics', 0, 'metrics'),
        SamplingRule(r'^/api/', 0.01, 'api'),
    ]
)
"""The compiled-in rule table. Health checks and metrics scrapes must stay ahead of the `/api/` catch-all."""


def trace_id_ratio(trace_id: str) -> float:
    """Map a hex trace ID to a number in `[0, 1]` using its last 8 hex digits.

    Every service sees the same trace ID, so every span of a trace gets the same value
    and therefore the same sampling decision.
    Malformed IDs map to 0.0 instead of raising.
    """
    if not is_hashable_trace_id(trace_id):
        return 0.0
    return int(trace_id[-TRACE_ID_HASH_HEX_DIGITS:], 16) / MAX_UINT32


def is_hashable_trace_id(trace_id: str) -> bool:
    return (
        isinstance(trace_id, str)
        and len(trace_id) >= TRACE_ID_HASH_HEX_DIGITS
        and _HEX_SUFFIX_RE.fullmatch(trace_id[-TRACE_ID_HASH_HEX_DIGITS:]) is not None
    )


def check_trace_id_ratio(trace_id: str, rate: float) -> bool:
    return trace_id_ratio(trace_id) < rate


class HeadSampler(ABC):
    """Decides at span start whether a trace is kept."""

    kind: ClassVar[SamplingMode]

    @abstractmethod
    def should_sample(
        self, trace_id: str, path: str, attributes: otel_types.Attributes = None
    ) -> sampling.SamplingResult:
        """Return the head decision for a span. Must be pure and must never raise."""

    @abstractmethod
    def get_description(self) -> str: ...

    def __repr__(self) -> str:
        return self.get_description()


class AlwaysSampleSampler(HeadSampler):
    """Keeps every span, for local and debugging environments."""

    kind = 'always'

    def __init__(self, label: str = 'development') -> None:
        self.label = label

    def should_sample(
        self, trace_id: str, path: str, attributes: otel_types.Attributes = None
    ) -> sampling.SamplingResult:
        return sampling.SamplingResult(Decision.RECORD_AND_SAMPLE, {ATTRIBUTES_SAMPLING_REASON_KEY: self.label})

    def get_description(self) -> str:
        return f'AlwaysSampleSampler{{{self.label}}}'


class RuleBasedSampler(HeadSampler):
    """Samples by path rule, hashing the trace ID so that whole traces are kept or dropped together.

    1. A span that already carries an error status code (`http.status_code >= 400`) is always kept.
    2. Otherwise the first rule matching the path decides: rate 0 drops, rate 1 keeps,
       anything in between compares the trace ID ratio with the rate.
    3. Paths matching no rule use `default_rate` in the same way,
       and so do malformed trace IDs under a rule with a rate strictly between 0 and 1.
    """

    kind = 'rules'

    def __init__(
        self, rules: Iterable[SamplingRule] = DEFAULT_RULES, default_rate: float = DEFAULT_SAMPLE_RATE
    ) -> None:
        self.rules = rules if isinstance(rules, RuleTable) else RuleTable(rules)
        if isinstance(default_rate, bool) or not (0.0 <= default_rate <= 1.0):
            raise TraceSiftConfigError(f'Default sampling rate must be between 0 and 1, got {default_rate!r}')
        self.default_rate = float(default_rate)

    def should_sample(
        self, trace_id: str, path: str, attributes: otel_types.Attributes = None
    ) -> sampling.SamplingResult:
        status_code = get_status_code(attributes)
        if status_code is not None and status_code >= 400:
            return sampling.SamplingResult(
                Decision.RECORD_AND_SAMPLE,
                {ATTRIBUTES_SAMPLING_REASON_KEY: 'error_response', ATTRIBUTES_SAMPLING_RULE_KEY: 'error'},
            )

        rule = self.rules.match(path) if isinstance(path, str) else None
        if rule is None:
            return self._sample_ratio(trace_id, self.default_rate, 'default', 'default')

        if 0 < rule.rate < 1 and not is_hashable_trace_id(trace_id):
            # There's nothing to hash, so the rule's rate can't be applied.
            return self._sample_ratio(trace_id, self.default_rate, 'default', 'default')

        if rule.rate == 0:
            return sampling.SamplingResult(Decision.DROP)
        if rule.rate == 1:
            return sampling.SamplingResult(
                Decision.RECORD_AND_SAMPLE,
                {ATTRIBUTES_SAMPLING_REASON_KEY: 'always_sample', ATTRIBUTES_SAMPLING_RULE_KEY: rule.tag},
            )
        return self._sample_ratio(trace_id, rule.rate, rule.tag, 'probabilistic')

    @staticmethod
    def _sample_ratio(trace_id: str, rate: float, tag: str, reason: str) -> sampling.SamplingResult:
        if not check_trace_id_ratio(trace_id, rate):
            return sampling.SamplingResult(Decision.DROP)
        return sampling.SamplingResult(
            Decision.RECORD_AND_SAMPLE,
            {
                ATTRIBUTES_SAMPLING_REASON_KEY: reason,
                ATTRIBUTES_SAMPLING_RULE_KEY: tag,
                ATTRIBUTES_SAMPLING_RATE_KEY: rate,
            },
        )

    def get_description(self) -> str:
        return f'RuleBasedSampler{{{len(self.rules)} rules}}'


AnySampler = Union[AlwaysSampleSampler, RuleBasedSampler]


def create_sampler(
    mode: SamplingMode,
    rules: Iterable[SamplingRule] = DEFAULT_RULES,
    *,
    default_rate: float = DEFAULT_SAMPLE_RATE,
    label: str = 'development',
) -> AnySampler:
    """Build the head sampler once at startup.

    `'always'` keeps every span and ignores the rules, `'rules'` uses a `RuleBasedSampler`.
    """
    if mode == 'always':
        return AlwaysSampleSampler(label)
    if mode == 'rules':
        return RuleBasedSampler(rules, default_rate)
    raise TraceSiftConfigError(f"Expected sampling mode to be 'always' or 'rules', got {mode!r}")


def sampling_mode_for_environment(environment: str | None) -> SamplingMode:
    return 'always' if (environment or 'development') == 'development' else 'rules'

