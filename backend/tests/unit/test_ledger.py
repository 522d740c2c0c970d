from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
import threading

import pytest
from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from flagledger.models.schema import AuditLog, Challenge, FlagAttempt, LeaderboardEntry, Role, Submission, Team, User
from flagledger.services import ledger as ledger_module
from flagledger.services.cache import MemoryCache
from flagledger.services.config_store import RateLimitPolicy
from flagledger.services.errors import AlreadySolved, EventNotActive, IncorrectFlag, Internal, NotFound, RateLimited, ScoringError
from flagledger.services.events import LocalEventChannel
from flagledger.services.ledger import decayed_points, fingerprint, rate_limit_retry_after


def test_correct_flag_awards_team_and_updates_leaderboard(services, seed, clock) -> None:
    alice = seed.user('alice')
    team_id = seed.team('Team A', alice)
    challenge_id = seed.challenge(points=100)
    assert services.leaderboard.ranking()[0]['points'] == 0

    result = services.ledger.submit_flag(alice, challenge_id, 'flag{ok}')

    assert result.points_awarded == 100
    assert result.team_points == 100
    assert result.user_points == 100
    assert seed.get(Team, team_id).points == 100
    entry = services.leaderboard.ranking()[0]
    assert entry['team_id'] == team_id
    assert entry['points'] == 100
    assert entry['last_solve_at'] == clock.now.isoformat()
    assert entry['members'] == [{'id': alice.user_id, 'name': 'alice', 'points': 100}]


def test_solve_is_recorded_with_fingerprint_attempt_and_audit(services, seed) -> None:
    alice = seed.user('alice')
    team_id = seed.team('Team A', alice)
    challenge_id = seed.challenge()

    services.ledger.submit_flag(alice, challenge_id, 'flag{ok}')

    assert seed.count(Submission, Submission.fingerprint == fingerprint(challenge_id, team_id)) == 1
    assert seed.count(FlagAttempt, FlagAttempt.correct.is_(True)) == 1
    assert seed.count(AuditLog, AuditLog.action == 'ledger.solve') == 1


def test_flag_comparison_trims_whitespace_but_keeps_case(services, seed) -> None:
    alice = seed.user('alice')
    seed.team('Team A', alice)
    challenge_id = seed.challenge(flag='  flag{Case}\n')

    with pytest.raises(IncorrectFlag):
        services.ledger.submit_flag(alice, challenge_id, 'flag{case}')

    assert services.ledger.submit_flag(alice, challenge_id, ' flag{Case} ').points_awarded == 100


def test_teammate_gets_already_solved_without_second_award(services, seed) -> None:
    alice, bob = seed.user('alice'), seed.user('bob')
    team_id = seed.team('Team A', alice, bob)
    challenge_id = seed.challenge(points=100)
    services.ledger.submit_flag(alice, challenge_id, 'flag{ok}')

    with pytest.raises(AlreadySolved) as excinfo:
        services.ledger.submit_flag(bob, challenge_id, 'flag{ok}')

    assert excinfo.value.points_awarded == 100
    assert seed.get(Team, team_id).points == 100
    assert seed.get(User, bob.user_id).points == 0
    assert seed.count(Submission) == 1


def test_racing_teammate_loses_on_unique_fingerprint(services, seed, monkeypatch) -> None:
    alice, bob = seed.user('alice'), seed.user('bob')
    team_id = seed.team('Team A', alice, bob)
    challenge_id = seed.challenge(points=100)
    services.ledger.submit_flag(alice, challenge_id, 'flag{ok}')

    # Bob's pre-check ran before Alice committed.
    real_find = ledger_module._find_solve
    calls = []

    def stale_find(*args):
        calls.append(args)
        return None if len(calls) == 1 else real_find(*args)

    monkeypatch.setattr(ledger_module, '_find_solve', stale_find)

    with pytest.raises(AlreadySolved) as excinfo:
        services.ledger.submit_flag(bob, challenge_id, 'flag{ok}')

    assert excinfo.value.points_awarded == 100
    assert seed.count(Submission) == 1
    assert seed.get(Team, team_id).points == 100
    assert seed.get(User, bob.user_id).points == 0
    assert services.leaderboard.ranking()[0]['points'] == 100


def test_rate_limit_counts_wrong_and_right_attempts(services, seed, clock) -> None:
    alice = seed.user('alice')
    seed.team('Team A', alice)
    challenge_id = seed.challenge()

    for _ in range(3):
        with pytest.raises(IncorrectFlag):
            services.ledger.submit_flag(alice, challenge_id, 'nope')
        clock.advance(1)

    with pytest.raises(RateLimited) as excinfo:
        services.ledger.submit_flag(alice, challenge_id, 'flag{ok}')
    # Locked until 60s after the third attempt.
    assert excinfo.value.retry_after == 59
    assert seed.count(FlagAttempt) == 3

    clock.advance(59)
    assert services.ledger.submit_flag(alice, challenge_id, 'flag{ok}').points_awarded == 100


def test_rate_limit_spans_all_challenges(services, seed) -> None:
    alice = seed.user('alice')
    seed.team('Team A', alice)
    challenges = [seed.challenge(title=f'c{i}') for i in range(4)]

    for challenge_id in challenges[:3]:
        with pytest.raises(IncorrectFlag):
            services.ledger.submit_flag(alice, challenge_id, 'nope')

    with pytest.raises(RateLimited):
        services.ledger.submit_flag(alice, challenges[3], 'flag{ok}')
    assert seed.count(Submission) == 0

    # Other users are not affected.
    bob = seed.user('bob')
    assert services.ledger.submit_flag(bob, challenges[3], 'flag{ok}').points_awarded == 100


def test_parallel_wrong_guesses_cannot_exceed_limit(disk_services, disk_seed) -> None:
    seed = disk_seed
    alice = seed.user('alice')
    seed.team('Team A', alice)
    challenge_id = seed.challenge()
    disk_services.config_provider.get_config()
    barrier = threading.Barrier(6)

    def guess(_):
        barrier.wait()
        try:
            disk_services.ledger.submit_flag(alice, challenge_id, 'nope')
        except ScoringError as exc:
            return type(exc).__name__
        return 'accepted'

    with ThreadPoolExecutor(max_workers=6) as pool:
        outcomes = sorted(pool.map(guess, range(6)))

    assert outcomes == ['IncorrectFlag'] * 3 + ['RateLimited'] * 3
    assert seed.count(FlagAttempt) == 3


def test_rate_limit_retry_after_window() -> None:
    policy = RateLimitPolicy(max_attempts=3, window_seconds=30, cooldown_seconds=60)
    t0 = datetime(2026, 3, 1, 12, 0, 0)
    at = [t0 + timedelta(seconds=s) for s in (0, 20, 40)]

    # Never three inside one 30s window.
    assert rate_limit_retry_after(at, t0 + timedelta(seconds=41), policy) == 0
    burst = [t0 + timedelta(seconds=s) for s in (0, 1, 2)]
    assert rate_limit_retry_after(burst, t0 + timedelta(seconds=2), policy) == 60
    assert rate_limit_retry_after(burst, t0 + timedelta(seconds=62), policy) == 0

    short = RateLimitPolicy(max_attempts=3, window_seconds=30, cooldown_seconds=5)
    # The window has to drain even when the cooldown is shorter.
    assert rate_limit_retry_after(burst, t0 + timedelta(seconds=10), short) == 20


@pytest.mark.parametrize('state', ['PAUSED', 'STOPPED'])
def test_submission_rejected_unless_running(services, seed, state) -> None:
    alice = seed.user('alice')
    seed.team('Team A', alice)
    challenge_id = seed.challenge()
    services.config_provider.update_config({'event_state': state})

    with pytest.raises(EventNotActive):
        services.ledger.submit_flag(alice, challenge_id, 'flag{ok}')
    assert seed.count(FlagAttempt) == 0


def test_missing_or_hidden_challenge_is_not_found(services, seed) -> None:
    alice = seed.user('alice')
    seed.team('Team A', alice)
    hidden = seed.challenge(visible=False)

    with pytest.raises(NotFound):
        services.ledger.submit_flag(alice, 'no-such-challenge', 'flag{ok}')
    with pytest.raises(NotFound):
        services.ledger.submit_flag(alice, hidden, 'flag{ok}')

    author = seed.user('author', role=Role.challenge_creator)
    assert services.ledger.submit_flag(author, hidden, 'flag{ok}').points_awarded == 100


def test_dynamic_scoring_awards_current_value(services, seed) -> None:
    services.config_provider.update_config({'dynamic_scoring': True})
    alice, bob = seed.user('alice'), seed.user('bob')
    team_a = seed.team('Team A', alice)
    team_b = seed.team('Team B', bob)
    challenge_id = seed.challenge(points=500)

    first = services.ledger.submit_flag(alice, challenge_id, 'flag{ok}')
    assert first.points_awarded == 500
    assert 375 <= first.challenge_points < 500
    assert seed.get(Challenge, challenge_id).points == first.challenge_points

    second = services.ledger.submit_flag(bob, challenge_id, 'flag{ok}')
    assert second.points_awarded == first.challenge_points
    assert second.challenge_points <= first.challenge_points

    # No retroactive deduction.
    assert seed.get(Team, team_a).points == 500
    assert seed.get(Team, team_b).points == first.challenge_points


def test_static_scoring_leaves_challenge_value_alone(services, seed) -> None:
    alice = seed.user('alice')
    seed.team('Team A', alice)
    challenge_id = seed.challenge(points=500)

    services.ledger.submit_flag(alice, challenge_id, 'flag{ok}')

    assert seed.get(Challenge, challenge_id).points == 500


def test_decay_curve_is_monotonic_with_floor() -> None:
    values = [decayed_points(500, solves, 0.03, 0.25) for solves in range(60)]

    assert values[0] == 500
    assert values[1] == 485
    assert all(a >= b for a, b in zip(values, values[1:]))
    assert min(values) == 375
    assert decayed_points(99, 1000, 0.03, 0.25) == 75
    assert decayed_points(0, 10, 0.03, 0.25) == 0


def test_teamless_user_scores_but_is_not_ranked(services, seed) -> None:
    solo = seed.user('solo')
    challenge_id = seed.challenge(points=100)

    result = services.ledger.submit_flag(solo, challenge_id, 'flag{ok}')

    assert result.team_points is None
    assert seed.get(User, solo.user_id).points == 100
    assert services.leaderboard.ranking() == []
    assert seed.count(LeaderboardEntry) == 0


def test_database_failure_rolls_back_whole_solve(services, seed, monkeypatch) -> None:
    alice = seed.user('alice')
    team_id = seed.team('Team A', alice)
    challenge_id = seed.challenge(points=100)

    def broken_upsert(*args, **kwargs):
        raise SQLAlchemyError('connection lost')

    monkeypatch.setattr(services.leaderboard, 'upsert_entry', broken_upsert)

    with pytest.raises(Internal):
        services.ledger.submit_flag(alice, challenge_id, 'flag{ok}')

    assert seed.count(Submission) == 0
    assert seed.get(User, alice.user_id).points == 0
    assert seed.get(Team, team_id).points == 0


class FailingCache(MemoryCache):
    def invalidate(self, *keys):
        raise ConnectionError('redis down')


class FailingChannel(LocalEventChannel):
    def publish(self, topic, event):
        raise ConnectionError('redis down')


def test_solve_publishes_challenges_and_leaderboard(services, seed, published) -> None:
    alice = seed.user('alice')
    seed.team('Team A', alice)
    challenge_id = seed.challenge()

    with pytest.raises(IncorrectFlag):
        services.ledger.submit_flag(alice, challenge_id, 'nope')
    assert published == []

    services.ledger.submit_flag(alice, challenge_id, 'flag{ok}')

    assert published == [
        ('ctf-triggers', {'challenges': True, 'leaderboard': True, 'status': False, 'announcements': False}),
    ]


def test_solve_evicts_cached_challenge_list(services, seed) -> None:
    services.config_provider.update_config({'dynamic_scoring': True})
    alice = seed.user('alice')
    seed.team('Team A', alice)
    challenge_id = seed.challenge(points=500)
    assert services.catalog.public_challenges()[0]['points'] == 500

    result = services.ledger.submit_flag(alice, challenge_id, 'flag{ok}')

    assert result.challenge_points == 485
    assert services.catalog.public_challenges()[0]['points'] == 485
    assert services.catalog.list_challenges(alice)[0]['solved'] is True


def test_solve_survives_broken_cache_and_channel(services, seed, monkeypatch) -> None:
    alice = seed.user('alice')
    team_id = seed.team('Team A', alice)
    challenge_id = seed.challenge(points=100)
    monkeypatch.setattr(services.fanout, 'cache', FailingCache())
    monkeypatch.setattr(services.fanout, 'channel', FailingChannel())

    result = services.ledger.submit_flag(alice, challenge_id, 'flag{ok}')

    assert result.points_awarded == 100
    assert seed.count(Submission) == 1
    assert seed.get(Team, team_id).points == 100


def test_constraint_failure_without_existing_solve_is_internal(services, seed, monkeypatch) -> None:
    alice = seed.user('alice')
    seed.team('Team A', alice)
    challenge_id = seed.challenge()

    def violates_foreign_key(*args):
        raise IntegrityError('INSERT INTO submissions', {}, Exception('FOREIGN KEY constraint failed'))

    monkeypatch.setattr(services.ledger, '_record_solve', violates_foreign_key)

    with pytest.raises(Internal):
        services.ledger.submit_flag(alice, challenge_id, 'flag{ok}')
    assert seed.count(Submission) == 0


def test_challenge_deleted_before_award_is_not_found(services, seed, monkeypatch) -> None:
    alice = seed.user('alice')
    team_id = seed.team('Team A', alice)
    challenge_id = seed.challenge()
    record_solve = services.ledger._record_solve

    def delete_then_record(user_id, team_id, challenge_id, *args):
        with services.session_factory() as session, session.begin():
            session.execute(delete(Challenge).where(Challenge.id == challenge_id))
        return record_solve(user_id, team_id, challenge_id, *args)

    monkeypatch.setattr(services.ledger, '_record_solve', delete_then_record)

    with pytest.raises(NotFound):
        services.ledger.submit_flag(alice, challenge_id, 'flag{ok}')
    assert seed.count(Submission) == 0
    assert seed.get(Team, team_id).points == 0
