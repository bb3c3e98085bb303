"""Types for configuring head sampling and the rule table."""

from .._internal.sampling import (
    DEFAULT_RULES,
    AlwaysSampleSampler,
    HeadSampler,
    RuleBasedSampler,
    RuleTable,
    SamplingRule,
    check_trace_id_ratio,
    create_sampler,
    is_hashable_trace_id,
    sampling_mode_for_environment,
    trace_id_ratio,
)

__all__ = [
    'DEFAULT_RULES',
    'AlwaysSampleSampler',
    'HeadSampler',
    'RuleBasedSampler',
    'RuleTable',
    'SamplingRule',
    'check_trace_id_ratio',
    'create_sampler',
    'is_hashable_trace_id',
    'sampling_mode_for_environment',
    'trace_id_ratio',
]
