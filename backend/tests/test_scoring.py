import pytest

from partyhub.errors import InvalidConfig, InvariantViolation
from partyhub.services.quiz.scoring import (
    Answer,
    Outcome,
    PenaltyPolicy,
    RoundConfig,
    grade,
    summarize,
    validate_round_config,
)


def _config(**overrides):
    values = dict(
        round_id=1,
        question_ref='q-1',
        options=('A', 'B', 'C', 'D'),
        correct_option='B',
        base_score=10,
        penalty=PenaltyPolicy.enabled(5),
        timeout_penalty=PenaltyPolicy.enabled(10),
        time_limit_sec=30,
    )
    values.update(overrides)
    return RoundConfig(**values)


def test_correct_incorrect_and_silent_participants():
    # A answers correctly, B wrongly, C never answers
    deltas = grade(_config(), [Answer(1, 'B', 3.0), Answer(2, 'A', 4.0)], eligible=[1, 2, 3])
    by_pid = {d.participant_id: d for d in deltas}
    assert (by_pid[1].points, by_pid[1].outcome) == (10, Outcome.CORRECT)
    assert (by_pid[2].points, by_pid[2].outcome) == (-5, Outcome.INCORRECT)
    assert (by_pid[3].points, by_pid[3].outcome) == (-10, Outcome.TIMEOUT)


def test_disabled_penalties_score_zero():
    config = _config(penalty=PenaltyPolicy.disabled(), timeout_penalty=PenaltyPolicy.disabled())
    deltas = grade(config, [Answer(1, 'C')], eligible=[1, 2])
    assert [d.points for d in deltas] == [0, 0]
    assert [d.outcome for d in deltas] == [Outcome.INCORRECT, Outcome.TIMEOUT]


def test_explicit_no_answer_scored_like_timeout():
    deltas = grade(_config(), [Answer(1, None, 2.0), Answer(2, '  ', 2.5)], eligible=[1, 2])
    assert all(d.outcome == Outcome.NO_ANSWER for d in deltas)
    assert all(d.points == -10 for d in deltas)


def test_one_delta_per_eligible_or_submitting_participant():
    # Participant 9 is not in the eligible list but did submit
    deltas = grade(_config(), [Answer(9, 'B'), Answer(2, 'B')], eligible=[4, 2, 1])
    assert [d.participant_id for d in deltas] == [1, 2, 4, 9]


def test_grading_is_deterministic():
    answers = [Answer(3, 'A', 1.0), Answer(1, 'B', 2.0), Answer(2, None, 0.5)]
    first = grade(_config(), answers, eligible=[1, 2, 3, 4])
    again = grade(_config(), list(reversed(answers)), eligible=[4, 3, 2, 1])
    assert first == again


def test_two_submissions_for_one_participant_is_an_invariant_violation():
    with pytest.raises(InvariantViolation):
        grade(_config(), [Answer(1, 'A'), Answer(1, 'B')], eligible=[1])


def test_summary_counts_and_fastest_correct():
    config = _config()
    answers = [Answer(1, 'B', 4.0), Answer(2, 'B', 1.5), Answer(3, 'A', 2.0), Answer(4, None, 0.0)]
    deltas = grade(config, answers, eligible=[1, 2, 3, 4, 5])
    summary = summarize(config, answers, deltas)
    assert summary['option_counts'] == {'A': 1, 'B': 2, 'C': 0, 'D': 0}
    assert summary['no_answer_count'] == 1
    assert summary['outcome_counts'] == {'correct': 2, 'incorrect': 1, 'timeout': 1, 'no-answer': 1}
    assert summary['total_submissions'] == 4
    assert summary['average_elapsed_sec'] == 2.5
    assert [f['participant_id'] for f in summary['fastest_correct']] == [2, 1]
    assert len(summary['deltas']) == 5


def test_penalty_policy_from_fields():
    assert PenaltyPolicy.from_fields(False, 7) == PenaltyPolicy.disabled()
    assert PenaltyPolicy.from_fields(True, 7).deduction == -7
    assert not PenaltyPolicy.disabled().is_enabled
    assert PenaltyPolicy.enabled(0).is_enabled
    assert PenaltyPolicy.enabled(0).deduction == 0
    with pytest.raises(InvalidConfig):
        PenaltyPolicy.from_fields(True, None)


def test_validate_round_config_accepts_good_definition(round_def):
    config = validate_round_config(round_def)
    assert config.options == ('A', 'B', 'C', 'D')
    assert config.penalty.amount == 5
    assert config.timeout_penalty.amount == 10


def test_validate_round_config_accepts_column_width_limits(round_def):
    round_def.update({'question_ref': 'q' * 128, 'options': ['A', 'x' * 64], 'correct_option': 'A'})
    config = validate_round_config(round_def)
    assert len(config.question_ref) == 128
    assert config.options[1] == 'x' * 64


def test_enabled_flags_may_be_omitted(round_def):
    del round_def['penalty_enabled']
    round_def['timeout_penalty_enabled'] = None
    config = validate_round_config(round_def)
    assert not config.penalty.is_enabled
    assert not config.timeout_penalty.is_enabled


@pytest.mark.parametrize('change', [
    {'options': ['A']},
    {'options': ['A', 'A']},
    {'options': ['A', '']},
    {'correct_option': 'Z'},
    {'time_limit_sec': 2},
    {'time_limit_sec': 301},
    {'time_limit_sec': '30'},
    {'base_score': -1},
    {'base_score': True},
    {'penalty_score': None},
    {'question_ref': ''},
    {'question_ref': 'q' * 129},
    {'options': ['A', 'x' * 65], 'correct_option': 'A'},
    {'penalty_enabled': 'false'},
    {'timeout_penalty_enabled': 1},
])
def test_validate_round_config_rejects(round_def, change):
    round_def.update(change)
    with pytest.raises(InvalidConfig):
        validate_round_config(round_def)
