from datetime import date, timedelta

from django.test import SimpleTestCase
from django.utils import timezone

from apps.intel_tasks.policies import (
    DuePolicy,
    QuorumCount,
    QuorumDefault,
    QuorumRatio,
    parse_due_policy,
)
from apps.intel_tasks.schedule import (
    CycleSpec,
    clamp_minute,
    compute_next_run_at,
    compute_period_info,
    is_dispatch_due,
    parse_period_key,
)
from tests.helpers import local


class PeriodCalculatorTests(SimpleTestCase):
    def test_daily_period(self):
        spec = CycleSpec(cycle_type='DAILY', run_at_minute=540, due_at_minute=600)

        info = compute_period_info(spec, local(2024, 3, 1, 8, 0))

        self.assertEqual(info.period_start, local(2024, 3, 1, 0, 0))
        self.assertEqual(info.due_at, local(2024, 3, 1, 10, 0))
        self.assertEqual(info.period_key, '2024-03-01')
        self.assertEqual(info.run_at_minute, 540)
        self.assertEqual(timezone.localtime(info.period_end).date(), date(2024, 3, 1))

    def test_weekly_period_due_on_friday(self):
        spec = CycleSpec(cycle_type='WEEKLY', due_at_minute=1080, due_day_of_week=5)

        info = compute_period_info(spec, local(2024, 3, 6, 12, 0))

        self.assertEqual(info.period_start, local(2024, 3, 4, 0, 0))
        self.assertEqual(info.due_at, local(2024, 3, 8, 18, 0))
        self.assertEqual(info.period_key, '2024-W10')
        self.assertEqual(timezone.localtime(info.period_end).date(), date(2024, 3, 10))

    def test_weekly_due_day_defaults_to_sunday(self):
        spec = CycleSpec(cycle_type='WEEKLY', due_at_minute=0)

        info = compute_period_info(spec, local(2024, 3, 6, 12, 0))

        self.assertEqual(info.due_at, local(2024, 3, 10, 0, 0))

    def test_weekly_due_day_is_clamped(self):
        spec = CycleSpec(cycle_type='WEEKLY', due_at_minute=0, due_day_of_week=9)

        info = compute_period_info(spec, local(2024, 3, 6, 12, 0))

        self.assertEqual(info.due_at, local(2024, 3, 10, 0, 0))

    def test_monthly_due_day_clamps_to_last_day(self):
        spec = CycleSpec(cycle_type='MONTHLY', due_at_minute=600, due_day_of_month=31)

        info = compute_period_info(spec, local(2024, 4, 10, 9, 0))

        self.assertEqual(info.period_start, local(2024, 4, 1, 0, 0))
        self.assertEqual(info.due_at, local(2024, 4, 30, 10, 0))
        self.assertEqual(info.period_key, '2024-04')

    def test_monthly_zero_means_last_day(self):
        spec = CycleSpec(cycle_type='MONTHLY', due_at_minute=600, due_day_of_month=0)

        info = compute_period_info(spec, local(2024, 2, 10, 9, 0))

        self.assertEqual(info.due_at, local(2024, 2, 29, 10, 0))

    def test_one_time_uses_deadline_offset(self):
        spec = CycleSpec(cycle_type='ONE_TIME', deadline_offset=24)
        anchor = local(2024, 3, 1, 8, 30)

        info = compute_period_info(spec, anchor)

        self.assertEqual(info.due_at, anchor + timedelta(hours=24))
        self.assertEqual(info.period_key, '2024-03-01')

    def test_unknown_cycle_type_behaves_like_one_time(self):
        spec = CycleSpec(cycle_type='HOURLY', run_at_minute=600)

        info = compute_period_info(spec, local(2024, 3, 1, 8, 30))

        # due_at_minute falls back to run_at_minute
        self.assertEqual(info.due_at, local(2024, 3, 1, 10, 0))
        self.assertEqual(info.period_key, '2024-03-01')

    def test_override_due_at_wins(self):
        spec = CycleSpec(cycle_type='DAILY', due_at_minute=600)
        override = local(2024, 3, 2, 12, 0)

        info = compute_period_info(spec, local(2024, 3, 1, 8, 0), override_due_at=override)

        self.assertEqual(info.due_at, override)

    def test_naive_anchor_is_treated_as_local(self):
        spec = CycleSpec(cycle_type='DAILY', due_at_minute=600)

        info = compute_period_info(spec, local(2024, 3, 1, 8, 0).replace(tzinfo=None))

        self.assertEqual(info.due_at, local(2024, 3, 1, 10, 0))

    def test_due_inside_period_and_key_parses_to_start(self):
        specs = [
            CycleSpec(cycle_type='DAILY', run_at_minute=540, due_at_minute=1439),
            CycleSpec(cycle_type='WEEKLY', due_day_of_week=1, due_at_minute=0),
            CycleSpec(cycle_type='MONTHLY', due_day_of_month=15, due_at_minute=720),
        ]
        anchors = [
            local(2023, 12, 31, 23, 59),
            local(2024, 1, 1, 0, 0),
            local(2024, 2, 29, 12, 0),
            local(2024, 12, 30, 9, 0),
        ]
        for spec in specs:
            for anchor in anchors:
                with self.subTest(cycle=spec.cycle_type, anchor=anchor):
                    info = compute_period_info(spec, anchor)
                    self.assertLessEqual(info.period_start, info.due_at)
                    self.assertLessEqual(info.due_at, info.period_end)
                    self.assertEqual(
                        parse_period_key(info.period_key),
                        timezone.localtime(info.period_start).date(),
                    )

    def test_iso_week_key_at_year_boundary(self):
        spec = CycleSpec(cycle_type='WEEKLY')

        info = compute_period_info(spec, local(2024, 12, 31, 9, 0))

        self.assertEqual(info.period_key, '2025-W01')
        self.assertEqual(parse_period_key('2025-W01'), date(2024, 12, 30))

    def test_parse_period_key_rejects_garbage(self):
        with self.assertRaises(ValueError):
            parse_period_key('yesterday')

    def test_clamp_minute(self):
        self.assertEqual(clamp_minute(5000), 1439)
        self.assertEqual(clamp_minute(-5), 0)
        self.assertEqual(clamp_minute(None, 30), 30)
        self.assertEqual(clamp_minute('abc', 7), 7)


class NextRunCalculatorTests(SimpleTestCase):
    def test_weekly_after_run_time_moves_to_next_week(self):
        spec = CycleSpec(cycle_type='WEEKLY', run_at_minute=540, run_day_of_week=1)

        next_run = compute_next_run_at(spec, local(2024, 3, 4, 9, 1))

        self.assertEqual(next_run, local(2024, 3, 11, 9, 0))

    def test_weekly_crosses_year_end(self):
        spec = CycleSpec(cycle_type='WEEKLY', run_at_minute=540, run_day_of_week=1)

        next_run = compute_next_run_at(spec, local(2023, 12, 31, 10, 0))

        self.assertEqual(next_run, local(2024, 1, 1, 9, 0))

    def test_daily_same_day_before_run_time(self):
        spec = CycleSpec(cycle_type='DAILY', run_at_minute=540)

        self.assertEqual(compute_next_run_at(spec, local(2024, 3, 1, 8, 0)), local(2024, 3, 1, 9, 0))

    def test_daily_exactly_at_run_time_is_strictly_after(self):
        spec = CycleSpec(cycle_type='DAILY', run_at_minute=540)

        self.assertEqual(compute_next_run_at(spec, local(2024, 3, 1, 9, 0)), local(2024, 3, 2, 9, 0))

    def test_monthly_reclamps_against_next_month(self):
        spec = CycleSpec(cycle_type='MONTHLY', run_at_minute=540, run_day_of_month=31)

        next_run = compute_next_run_at(spec, local(2024, 1, 31, 10, 0))

        self.assertEqual(next_run, local(2024, 2, 29, 9, 0))

    def test_monthly_december_rolls_into_january(self):
        spec = CycleSpec(cycle_type='MONTHLY', run_at_minute=0)

        next_run = compute_next_run_at(spec, local(2024, 12, 5, 10, 0))

        self.assertEqual(next_run, local(2025, 1, 1, 0, 0))

    def test_active_from_in_future_is_the_base(self):
        spec = CycleSpec(
            cycle_type='DAILY', run_at_minute=540, active_from=local(2024, 3, 10, 12, 0)
        )

        next_run = compute_next_run_at(spec, local(2024, 3, 1, 8, 0))

        self.assertEqual(next_run, local(2024, 3, 11, 9, 0))

    def test_one_time_without_active_from_never_runs(self):
        spec = CycleSpec(cycle_type='ONE_TIME', run_at_minute=540)

        self.assertIsNone(compute_next_run_at(spec, local(2024, 3, 1, 8, 0)))

    def test_one_time_with_active_from(self):
        spec = CycleSpec(
            cycle_type='ONE_TIME', run_at_minute=540, active_from=local(2024, 3, 5, 0, 0)
        )

        self.assertEqual(compute_next_run_at(spec, local(2024, 3, 1, 8, 0)), local(2024, 3, 5, 9, 0))
        self.assertIsNone(compute_next_run_at(spec, local(2024, 3, 5, 9, 30)))

    def test_result_is_strictly_after_now(self):
        specs = [
            CycleSpec(cycle_type='DAILY', run_at_minute=0),
            CycleSpec(cycle_type='WEEKLY', run_at_minute=1439, run_day_of_week=7),
            CycleSpec(cycle_type='MONTHLY', run_at_minute=720, run_day_of_month=0),
        ]
        now = local(2024, 2, 29, 12, 0)
        for spec in specs:
            with self.subTest(cycle=spec.cycle_type):
                self.assertGreater(compute_next_run_at(spec, now), now)


class DispatchFrequencyTests(SimpleTestCase):
    def test_daily_waits_for_dispatch_minute(self):
        self.assertFalse(is_dispatch_due('DAILY', [], [], 540, local(2024, 3, 4, 8, 59)))
        self.assertTrue(is_dispatch_due('DAILY', [], [], 540, local(2024, 3, 4, 9, 0)))

    def test_custom_is_daily(self):
        self.assertTrue(is_dispatch_due('CUSTOM', [], [], 0, local(2024, 3, 5, 0, 0)))

    def test_weekly_matches_iso_weekday(self):
        # 2024-03-06 is a Wednesday
        self.assertTrue(is_dispatch_due('WEEKLY', [1, 3], [], 0, local(2024, 3, 6, 10, 0)))
        self.assertFalse(is_dispatch_due('WEEKLY', [1, 2], [], 0, local(2024, 3, 6, 10, 0)))

    def test_monthly_zero_matches_last_day(self):
        self.assertTrue(is_dispatch_due('MONTHLY', [0], [0], 0, local(2024, 2, 29, 10, 0)))
        self.assertFalse(is_dispatch_due('MONTHLY', [], [0], 0, local(2024, 2, 28, 10, 0)))
        self.assertTrue(is_dispatch_due('MONTHLY', [], [15], 0, local(2024, 2, 15, 10, 0)))


class DuePolicyTests(SimpleTestCase):
    def test_empty_payload(self):
        self.assertEqual(parse_due_policy(None), DuePolicy())
        self.assertIsInstance(parse_due_policy({}).quorum, QuorumDefault)

    def test_count_and_alias(self):
        self.assertEqual(parse_due_policy({'quorumCount': 2}).quorum, QuorumCount(2))
        self.assertEqual(parse_due_policy({'quorum': '3'}).quorum, QuorumCount(3))

    def test_ratio_and_alias(self):
        self.assertEqual(parse_due_policy({'quorumRatio': 0.6}).quorum, QuorumRatio(0.6))
        self.assertEqual(parse_due_policy({'ratio': '0.5'}).quorum, QuorumRatio(0.5))

    def test_unparseable_count_falls_back_to_ratio(self):
        policy = parse_due_policy({'quorumCount': 'many', 'quorumRatio': 0.5})

        self.assertEqual(policy.quorum, QuorumRatio(0.5))

    def test_non_finite_ratio_falls_back_to_default(self):
        for value in ('inf', '-inf', float('inf'), 1e400, 'nan'):
            with self.subTest(value=value):
                policy = parse_due_policy({'quorumRatio': value})

                self.assertIsInstance(policy.quorum, QuorumDefault)
                self.assertEqual(policy.required_completions(3), 2)

    def test_ratio_above_one_is_capped(self):
        policy = parse_due_policy({'quorumRatio': 4})

        self.assertEqual(policy.quorum, QuorumRatio(1.0))
        self.assertEqual(policy.required_completions(3), 3)

    def test_due_overrides(self):
        policy = parse_due_policy({'dueAtMinute': 1020, 'dueDayOfWeek': 5, 'dueDayOfMonth': 0})

        self.assertEqual(policy.due_at_minute, 1020)
        self.assertEqual(policy.due_day_of_week, 5)
        self.assertEqual(policy.due_day_of_month, 0)

    def test_required_completions(self):
        self.assertEqual(DuePolicy(quorum=QuorumCount(2)).required_completions(3), 2)
        self.assertEqual(DuePolicy(quorum=QuorumCount(10)).required_completions(3), 3)
        self.assertEqual(DuePolicy(quorum=QuorumRatio(0.5)).required_completions(3), 2)
        self.assertEqual(DuePolicy().required_completions(3), 2)
        self.assertEqual(DuePolicy().required_completions(4), 2)
