from datetime import timedelta
from unittest.mock import MagicMock, patch

from entitlements.billing.state_machine import ExpirationOutcome
from entitlements.billing.status import EffectiveStatus
from entitlements.billing.sweepers import BillingResumeSweeper, ExpirationSweeper
from entitlements.utils.time import utcnow
from entitlements.workers.celerybeat import build_beat_schedule
from entitlements.workers.subscription_tasks import expiration_sweep, run_single

DAY = timedelta(days=1)


def test_expiration_candidates(manager, clock, now, make_user):
    lapsed_credit = make_user(credit_plus_balance_end=now - timedelta(days=1))
    make_user(credit_plus_balance_end=now + timedelta(days=5))
    lapsed_paid = make_user(tier_mini_plus=True, subscription_end_date=now - timedelta(hours=1))
    banked = make_user(credit_mini_plus_banked_days=30)
    make_user(credit_mini_plus_banked_days=30, credit_plus_balance_end=now + timedelta(days=2))
    make_user()

    sweeper = ExpirationSweeper(manager, clock=clock)

    assert set(sweeper.candidates()) == {lapsed_credit.id, lapsed_paid.id, banked.id}


def test_expiration_sweep_settles_accounts(manager, clock, now, make_user):
    lapsed_credit = make_user(credit_plus_balance_end=now - timedelta(days=1))
    banked = make_user(credit_mini_plus_banked_days=30)

    report = ExpirationSweeper(manager, clock=clock).run()

    assert report.to_dict() == {"checked": 2, "changed": 2, "failed": 0}
    assert lapsed_credit.credit_plus_balance_end is None
    assert lapsed_credit.subscription_status == "FREE"
    assert banked.credit_mini_plus_balance_end == now + timedelta(days=30)
    assert banked.credit_mini_plus_banked_days == 0


def test_one_failing_account_does_not_stop_the_sweep(app, clock, now, make_user):
    make_user(credit_plus_balance_end=now - timedelta(days=1))
    make_user(credit_plus_balance_end=now - timedelta(days=2))
    failing = MagicMock()
    failing.handle_subscription_expiration.side_effect = [
        RuntimeError("provider timeout"),
        ExpirationOutcome(changed=True, status=EffectiveStatus.FREE),
    ]

    report = ExpirationSweeper(failing, clock=clock).run()

    assert report.to_dict() == {"checked": 2, "changed": 1, "failed": 1}


def test_batch_size_limits_candidates(manager, clock, now, make_user):
    for _ in range(3):
        make_user(credit_plus_balance_end=now - timedelta(days=1))

    assert len(ExpirationSweeper(manager, clock=clock, batch_size=2).candidates()) == 2


def test_resume_sweep_respects_lookahead(manager, provider, clock, now, make_user):
    due = make_user(
        tier_plus=True,
        subscription_end_date=now + timedelta(days=3),
        external_customer_id="cus_due",
        paused_external_subscription_id="sub_due",
        credit_plus_balance_end=now + timedelta(minutes=30),
    )
    make_user(
        tier_plus=True,
        subscription_end_date=now + timedelta(days=3),
        external_customer_id="cus_later",
        paused_external_subscription_id="sub_later",
        credit_plus_balance_end=now + timedelta(days=2),
    )

    sweeper = BillingResumeSweeper(manager, clock=clock, lookahead_minutes=60)
    assert sweeper.candidates() == [due.id]

    report = sweeper.run()

    assert report.changed == 1
    provider.resume_subscription.assert_called_once_with("sub_due", user_id=due.id)
    assert due.paused_external_subscription_id is None
    assert due.subscription_end_date == now + timedelta(days=30)


def test_resume_sweep_skips_accounts_with_banked_mini_plus(manager, clock, now, make_user):
    make_user(
        tier_mini_plus=True,
        subscription_end_date=now + 30 * DAY,
        paused_external_subscription_id="sub_banked",
        credit_plus_balance_end=now + timedelta(minutes=10),
        credit_mini_plus_banked_days=30,
    )
    behind_paid_plus = make_user(
        tier_plus=True,
        subscription_end_date=now + 30 * DAY,
        paused_external_subscription_id="sub_plus",
        credit_plus_balance_end=now + timedelta(minutes=10),
        credit_mini_plus_banked_days=30,
    )

    sweeper = BillingResumeSweeper(manager, clock=clock, lookahead_minutes=60)

    assert sweeper.candidates() == [behind_paid_plus.id]


def test_run_single_skips_when_lock_is_held(app):
    client = MagicMock()
    client.lock.return_value.acquire.return_value = False
    work = MagicMock()

    with patch("entitlements.utils.redis_lock.get_redis_client", return_value=client):
        assert run_single("sweep:test", work) is None

    work.assert_not_called()
    client.lock.assert_called_once_with("lock:sweep:test", timeout=app.config["SWEEP_LOCK_TTL_SECONDS"])


def test_run_single_releases_lock(app):
    client = MagicMock()
    client.lock.return_value.acquire.return_value = True

    with patch("entitlements.utils.redis_lock.get_redis_client", return_value=client):
        assert run_single("sweep:test", lambda: 7) == 7

    client.lock.return_value.release.assert_called_once()


def test_expiration_sweep_task_runs_eagerly(app, patched_provider, make_user):
    user = make_user(credit_plus_balance_end=utcnow() - timedelta(days=1))

    assert expiration_sweep.delay().get() == 1

    assert user.credit_plus_balance_end is None


def test_beat_schedule_covers_all_sweeps(app):
    schedule = build_beat_schedule(app.config)

    assert {entry["task"] for entry in schedule.values()} == {
        "entitlements.expiration_sweep",
        "entitlements.billing_resume_sweep",
        "entitlements.gift_token_expiry_sweep",
        "entitlements.daily_status_check",
        "entitlements.duplicate_customer_scan",
        "entitlements.webhook_ledger_purge",
    }
    assert schedule["expiration-sweep"]["schedule"] == timedelta(
        minutes=app.config["EXPIRATION_SWEEP_MINUTES"]
    )
