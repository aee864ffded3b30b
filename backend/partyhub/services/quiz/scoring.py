"""Round grading.

Everything here is a pure function of the round configuration and the
ledger slice for that round, so a crash mid-grading is recovered by simply
running it again.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from partyhub.errors import InvalidConfig, InvariantViolation

# Column widths of Round.question_ref and Round.correct_option / Submission.option
MAX_QUESTION_REF_LEN = 128
MAX_OPTION_LEN = 64


class Outcome(str, Enum):
    CORRECT = 'correct'
    INCORRECT = 'incorrect'
    TIMEOUT = 'timeout'
    NO_ANSWER = 'no-answer'


@dataclass(frozen=True)
class PenaltyPolicy:
    """``Disabled`` when amount is None, ``Enabled(amount)`` otherwise."""
    amount: Optional[int] = None

    @classmethod
    def disabled(cls) -> 'PenaltyPolicy':
        return cls(None)

    @classmethod
    def enabled(cls, amount: int) -> 'PenaltyPolicy':
        return cls(_non_negative_int(amount, 'penalty amount'))

    @classmethod
    def from_fields(cls, enabled: Any, amount: Any, label: str = 'penalty') -> 'PenaltyPolicy':
        """Collapse the loose ``*_enabled`` / ``*_score`` column pair."""
        # A string such as 'false' is truthy; only real booleans are accepted
        if enabled is not None and not isinstance(enabled, bool):
            raise InvalidConfig(f'{label} enabled flag must be true or false')
        if not enabled:
            return cls.disabled()
        if amount is None:
            raise InvalidConfig(f'{label} is enabled but has no amount')
        return cls(_non_negative_int(amount, label))

    @property
    def is_enabled(self) -> bool:
        return self.amount is not None

    @property
    def deduction(self) -> int:
        return -self.amount if self.amount else 0


@dataclass(frozen=True)
class RoundConfig:
    round_id: Optional[int]
    question_ref: str
    options: Tuple[str, ...]
    correct_option: str
    base_score: int
    penalty: PenaltyPolicy = field(default_factory=PenaltyPolicy.disabled)
    timeout_penalty: PenaltyPolicy = field(default_factory=PenaltyPolicy.disabled)
    time_limit_sec: int = 30

    @classmethod
    def from_round(cls, rnd) -> 'RoundConfig':
        return cls(
            round_id=rnd.id,
            question_ref=rnd.question_ref,
            options=tuple(rnd.option_list),
            correct_option=rnd.correct_option,
            base_score=rnd.base_score,
            penalty=PenaltyPolicy.from_fields(rnd.penalty_enabled, rnd.penalty_score),
            timeout_penalty=PenaltyPolicy.from_fields(rnd.timeout_penalty_enabled, rnd.timeout_penalty_score, 'timeout penalty'),
            time_limit_sec=rnd.time_limit_sec,
        )


@dataclass(frozen=True)
class Answer:
    participant_id: int
    option: Optional[str]
    elapsed_sec: float = 0.0


@dataclass(frozen=True)
class ScoreDelta:
    participant_id: int
    round_id: Optional[int]
    points: int
    outcome: Outcome

    def to_dict(self) -> Dict[str, Any]:
        return {
            'participant_id': self.participant_id,
            'round_id': self.round_id,
            'points': self.points,
            'outcome': self.outcome.value,
        }


def _non_negative_int(value: Any, label: str) -> int:
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidConfig(f'{label} must be an integer')
    if value < 0:
        raise InvalidConfig(f'{label} must not be negative')
    return value


def validate_round_config(data: Mapping[str, Any], min_time_limit: int = 5, max_time_limit: int = 300) -> RoundConfig:
    """Validate an admin supplied round definition and return its typed form."""
    if not isinstance(data, Mapping):
        raise InvalidConfig('round definition must be an object')

    question_ref = data.get('question_ref')
    if not isinstance(question_ref, str) or not question_ref.strip():
        raise InvalidConfig('question_ref is required')
    if len(question_ref.strip()) > MAX_QUESTION_REF_LEN:
        raise InvalidConfig(f'question_ref must be at most {MAX_QUESTION_REF_LEN} characters')

    options = data.get('options')
    if not isinstance(options, (list, tuple)) or len(options) < 2:
        raise InvalidConfig('at least two options are required')
    if any(not isinstance(o, str) or not o.strip() for o in options):
        raise InvalidConfig('options must be non-empty strings')
    if any(len(o) > MAX_OPTION_LEN for o in options):
        raise InvalidConfig(f'options must be at most {MAX_OPTION_LEN} characters')
    if len(set(options)) != len(options):
        raise InvalidConfig('options must be distinct')

    correct = data.get('correct_option')
    if correct not in options:
        raise InvalidConfig('exactly one option must be marked correct')

    time_limit = _non_negative_int(data.get('time_limit_sec'), 'time_limit_sec')
    if not (min_time_limit <= time_limit <= max_time_limit):
        raise InvalidConfig(f'time_limit_sec must be between {min_time_limit} and {max_time_limit}')

    return RoundConfig(
        round_id=None,
        question_ref=question_ref.strip(),
        options=tuple(options),
        correct_option=correct,
        base_score=_non_negative_int(data.get('base_score'), 'base_score'),
        penalty=PenaltyPolicy.from_fields(data.get('penalty_enabled'), data.get('penalty_score')),
        timeout_penalty=PenaltyPolicy.from_fields(
            data.get('timeout_penalty_enabled'), data.get('timeout_penalty_score'), 'timeout penalty'
        ),
        time_limit_sec=time_limit,
    )


def is_no_answer(option: Optional[str]) -> bool:
    return option is None or not str(option).strip()


def grade_answer(config: RoundConfig, answer: Optional[Answer], participant_id: int) -> ScoreDelta:
    if answer is None:
        return ScoreDelta(participant_id, config.round_id, config.timeout_penalty.deduction, Outcome.TIMEOUT)
    # An explicit "I don't know" is scored like not answering at all
    if is_no_answer(answer.option):
        return ScoreDelta(participant_id, config.round_id, config.timeout_penalty.deduction, Outcome.NO_ANSWER)
    if answer.option == config.correct_option:
        return ScoreDelta(participant_id, config.round_id, config.base_score, Outcome.CORRECT)
    return ScoreDelta(participant_id, config.round_id, config.penalty.deduction, Outcome.INCORRECT)


def grade(config: RoundConfig, submissions: Iterable[Answer], eligible: Iterable[int]) -> List[ScoreDelta]:
    """Produce exactly one delta per eligible participant and per submitter.

    Output is ordered by participant id so repeated grading of the same
    inputs yields the same sequence.
    """
    by_participant: Dict[int, Answer] = {}
    for answer in submissions:
        if answer.participant_id in by_participant:
            raise InvariantViolation(
                'ledger holds two submissions for one participant',
                round_id=config.round_id,
                participant_id=answer.participant_id,
            )
        by_participant[answer.participant_id] = answer

    participants = set(eligible) | set(by_participant)
    return [grade_answer(config, by_participant.get(pid), pid) for pid in sorted(participants)]


def summarize(config: RoundConfig, submissions: Sequence[Answer], deltas: Sequence[ScoreDelta]) -> Dict[str, Any]:
    """Round summary broadcast with ``round.closed``."""
    option_counts = {option: 0 for option in config.options}
    no_answer = 0
    for answer in submissions:
        if is_no_answer(answer.option):
            no_answer += 1
        elif answer.option in option_counts:
            option_counts[answer.option] += 1

    outcome_counts = {outcome.value: 0 for outcome in Outcome}
    for delta in deltas:
        outcome_counts[delta.outcome.value] += 1

    answered = [a for a in submissions if not is_no_answer(a.option)]
    average_elapsed = round(sum(a.elapsed_sec for a in answered) / len(answered), 3) if answered else None

    fastest = sorted(
        (a for a in answered if a.option == config.correct_option),
        key=lambda a: (a.elapsed_sec, a.participant_id),
    )[:3]

    return {
        'round_id': config.round_id,
        'question_ref': config.question_ref,
        'correct_option': config.correct_option,
        'option_counts': option_counts,
        'no_answer_count': no_answer,
        'outcome_counts': outcome_counts,
        'total_submissions': len(submissions),
        'average_elapsed_sec': average_elapsed,
        'fastest_correct': [
            {'rank': i + 1, 'participant_id': a.participant_id, 'elapsed_sec': a.elapsed_sec}
            for i, a in enumerate(fastest)
        ],
        'deltas': [d.to_dict() for d in deltas],
    }
