from __future__ import annotations


class ScoringError(Exception):
    kind = 'internal'
    message = 'Internal server error'

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)
        self.detail = message or self.message


class EventNotActive(ScoringError):
    kind = 'event_not_active'
    message = 'The competition is not running'


class RateLimited(ScoringError):
    kind = 'rate_limited'
    message = 'Too many attempts'

    def __init__(self, retry_after: int) -> None:
        super().__init__(f'Too many attempts, retry in {retry_after}s')
        self.retry_after = retry_after


class AlreadySolved(ScoringError):
    kind = 'already_solved'
    message = 'You (or your team) have already solved this challenge'

    def __init__(self, points_awarded: int | None = None) -> None:
        super().__init__()
        self.points_awarded = points_awarded


class IncorrectFlag(ScoringError):
    kind = 'incorrect_flag'
    message = 'Incorrect flag'


class NotFound(ScoringError):
    kind = 'not_found'
    message = 'Not found'


class NoTeam(ScoringError):
    kind = 'no_team'
    message = 'You must belong to a team'


class InsufficientPoints(ScoringError):
    kind = 'insufficient_points'
    message = 'Insufficient team points'


class Internal(ScoringError):
    kind = 'internal'
    message = 'Internal server error'
