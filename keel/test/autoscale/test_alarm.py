"""Tests for :mod:`keel.autoscale.alarm`."""

from twisted.trial.unittest import SynchronousTestCase

from keel.autoscale.alarm import (
    Alarm,
    AlarmState,
    AlarmStatus,
    Comparison,
    MetricSample,
    Statistic,
    aggregate,
    evaluate_alarm,
    transitioned_to_alarm)


def samples(*values):
    return [MetricSample(timestamp=i, value=v) for i, v in enumerate(values)]


def run_periods(alarm, values, state=AlarmState()):
    """Evaluate ``alarm`` over one value per period, returning every state."""
    states = []
    for value in values:
        state = evaluate_alarm(alarm, state, value)
        states.append(state)
    return states


class AggregateTests(SynchronousTestCase):
    """Tests for :func:`aggregate`."""

    def test_statistics(self):
        """Each statistic combines the sample values."""
        period = samples(1, 5, 3)
        self.assertEqual(aggregate(Statistic.AVERAGE, period), 3)
        self.assertEqual(aggregate(Statistic.MAXIMUM, period), 5)
        self.assertEqual(aggregate(Statistic.MINIMUM, period), 1)
        self.assertEqual(aggregate(Statistic.SUM, period), 9)
        self.assertEqual(aggregate(Statistic.SAMPLE_COUNT, period), 3)

    def test_no_samples(self):
        """
        No samples give no value, except for the sample count which is 0.
        """
        self.assertIsNone(aggregate(Statistic.AVERAGE, []))
        self.assertEqual(aggregate(Statistic.SAMPLE_COUNT, []), 0)


class AlarmTests(SynchronousTestCase):
    """Tests for :obj:`Alarm`."""

    def test_breaching(self):
        """Thresholds are inclusive in both directions."""
        high = Alarm('high', 70)
        self.assertTrue(high.breaching(70))
        self.assertFalse(high.breaching(69.9))
        low = Alarm('low', 20, Comparison.LESS_OR_EQUAL)
        self.assertTrue(low.breaching(20))
        self.assertFalse(low.breaching(21))

    def test_periods_must_be_positive(self):
        """An alarm needs at least one period."""
        self.assertRaises(ValueError, Alarm, 'a', 1, periods=0)


class EvaluateAlarmTests(SynchronousTestCase):
    """Tests for :func:`evaluate_alarm`."""

    def test_needs_consecutive_breaches(self):
        """
        With a threshold of 70 over 2 periods, values 65, 75, 80 leave the
        alarm OK after 75 and put it in ALARM after 80.
        """
        states = run_periods(Alarm('cpu', 70, periods=2), [65, 75, 80])
        self.assertEqual([s.status for s in states],
                         [AlarmStatus.OK, AlarmStatus.OK, AlarmStatus.ALARM])
        self.assertEqual(states[1].consecutive_breaching, 1)
        self.assertEqual(states[2].consecutive_breaching, 2)

    def test_interrupted_breaches_start_over(self):
        """A compliant period resets the breach count."""
        states = run_periods(Alarm('cpu', 70, periods=2), [75, 60, 75])
        self.assertNotIn(AlarmStatus.ALARM, [s.status for s in states])
        self.assertEqual(states[-1].consecutive_breaching, 1)

    def test_needs_consecutive_compliance_to_recover(self):
        """
        Once in ALARM, the alarm stays there until as many consecutive
        periods are compliant.
        """
        alarm = Alarm('cpu', 70, periods=2)
        states = run_periods(alarm, [80, 80, 60, 80, 60, 60])
        self.assertEqual(
            [s.status for s in states],
            [AlarmStatus.INSUFFICIENT_DATA, AlarmStatus.ALARM,
             AlarmStatus.ALARM, AlarmStatus.ALARM, AlarmStatus.ALARM,
             AlarmStatus.OK])

    def test_single_period(self):
        """With one period every value decides the status."""
        states = run_periods(Alarm('cpu', 70), [80, 60, 80])
        self.assertEqual([s.status for s in states],
                         [AlarmStatus.ALARM, AlarmStatus.OK,
                          AlarmStatus.ALARM])

    def test_no_data(self):
        """A period without a value resets an alarm that is not in ALARM."""
        alarm = Alarm('cpu', 70, periods=2)
        state = run_periods(alarm, [80, None])[-1]
        self.assertEqual(state, AlarmState(AlarmStatus.INSUFFICIENT_DATA))

    def test_no_data_does_not_recover(self):
        """
        A period without a value does not count towards leaving ALARM: one
        compliant period after it is not enough.
        """
        states = run_periods(Alarm('cpu', 70, periods=2), [80, 80, None, 60])
        self.assertEqual(
            [s.status for s in states],
            [AlarmStatus.INSUFFICIENT_DATA, AlarmStatus.ALARM,
             AlarmStatus.ALARM, AlarmStatus.ALARM])
        self.assertEqual(states[2], AlarmState(AlarmStatus.ALARM))
        self.assertEqual(states[3].consecutive_ok, 1)

    def test_no_data_under_sustained_breach(self):
        """
        A gap in the metric while breaching keeps the alarm in ALARM, so it
        goes into ALARM only once.
        """
        states = run_periods(Alarm('cpu', 70, periods=2),
                             [80, 80, None, 80, 80])
        self.assertEqual(
            [transitioned_to_alarm(previous, current)
             for previous, current in zip([AlarmState()] + states, states)],
            [False, True, False, False, False])
        self.assertEqual(states[-1].status, AlarmStatus.ALARM)

    def test_transitioned_to_alarm(self):
        """Only a change into ALARM counts as a transition."""
        ok = AlarmState(AlarmStatus.OK)
        alarm = AlarmState(AlarmStatus.ALARM)
        self.assertTrue(transitioned_to_alarm(ok, alarm))
        self.assertTrue(transitioned_to_alarm(AlarmState(), alarm))
        self.assertFalse(transitioned_to_alarm(alarm, alarm))
        self.assertFalse(transitioned_to_alarm(alarm, ok))
