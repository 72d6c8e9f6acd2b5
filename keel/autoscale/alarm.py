"""
Alarms over a load metric, with hysteresis.

An alarm does not change status on one bad or good period: it needs
``periods`` consecutive breaching periods to go into ALARM, and as many
consecutive compliant periods to leave it. A period without samples breaks
both streaks and makes the alarm INSUFFICIENT_DATA, unless it is in ALARM,
which it then stays in. The counters doing this are part of
:obj:`AlarmState` so that they can be inspected.
"""
import attr

from constantly import NamedConstant, Names


class Comparison(Names):
    """How a period's value is compared with an alarm's threshold."""
    GREATER_OR_EQUAL = NamedConstant()
    LESS_OR_EQUAL = NamedConstant()


class AlarmStatus(Names):
    """Status of an alarm."""
    OK = NamedConstant()
    ALARM = NamedConstant()
    INSUFFICIENT_DATA = NamedConstant()


class Statistic(Names):
    """How the samples of one period are combined into one value."""
    AVERAGE = NamedConstant()
    MAXIMUM = NamedConstant()
    MINIMUM = NamedConstant()
    SUM = NamedConstant()
    SAMPLE_COUNT = NamedConstant()


@attr.s(frozen=True)
class MetricSample(object):
    """One observation of a metric."""
    timestamp = attr.ib()
    value = attr.ib()


@attr.s(frozen=True)
class Alarm(object):
    """
    :ivar str name: unique name, which policies refer to
    :ivar threshold: value compared with each period's value
    :ivar comparison: :obj:`Comparison`; a period breaches when
        ``value <comparison> threshold``
    :ivar int periods: consecutive periods needed to change status
    :ivar statistic: :obj:`Statistic` combining a period's samples
    """
    name = attr.ib()
    threshold = attr.ib()
    comparison = attr.ib(default=Comparison.GREATER_OR_EQUAL)
    periods = attr.ib(default=1)
    statistic = attr.ib(default=Statistic.AVERAGE)

    @periods.validator
    def _check_periods(self, attribute, value):
        if value < 1:
            raise ValueError("periods must be at least 1, got {0}".format(
                value))

    def breaching(self, value):
        """Does ``value`` breach the threshold?"""
        if self.comparison == Comparison.GREATER_OR_EQUAL:
            return value >= self.threshold
        return value <= self.threshold


@attr.s(frozen=True)
class AlarmState(object):
    """Status and hysteresis counters of an alarm."""
    status = attr.ib(default=AlarmStatus.INSUFFICIENT_DATA)
    consecutive_breaching = attr.ib(default=0)
    consecutive_ok = attr.ib(default=0)


def aggregate(statistic, samples):
    """
    Combine the values of ``samples`` with ``statistic``.

    :return: the value, or ``None`` if there are no samples
    """
    values = [sample.value for sample in samples]
    if statistic == Statistic.SAMPLE_COUNT:
        return len(values)
    if not values:
        return None
    if statistic == Statistic.AVERAGE:
        return sum(values) / float(len(values))
    if statistic == Statistic.MAXIMUM:
        return max(values)
    if statistic == Statistic.MINIMUM:
        return min(values)
    return sum(values)


def evaluate_alarm(alarm, state, value):
    """
    Evaluate one period of an alarm.

    :param alarm: :obj:`Alarm`
    :param state: :obj:`AlarmState` after the previous period
    :param value: the period's value, or ``None`` if there were no samples

    :return: the new :obj:`AlarmState`
    """
    if value is None:
        # neither breaching nor compliant, and never a way out of ALARM
        if state.status == AlarmStatus.ALARM:
            return AlarmState(status=AlarmStatus.ALARM)
        return AlarmState(status=AlarmStatus.INSUFFICIENT_DATA)

    if alarm.breaching(value):
        breaching = state.consecutive_breaching + 1
        ok = 0
    else:
        breaching = 0
        ok = state.consecutive_ok + 1

    status = state.status
    if breaching >= alarm.periods:
        status = AlarmStatus.ALARM
    elif status == AlarmStatus.ALARM:
        if ok >= alarm.periods:
            status = AlarmStatus.OK
    elif ok > 0:
        status = AlarmStatus.OK
    return AlarmState(status=status, consecutive_breaching=breaching,
                      consecutive_ok=ok)


def transitioned_to_alarm(previous, current):
    """Did an alarm go into ALARM with this evaluation?"""
    return (current.status == AlarmStatus.ALARM and
            previous.status != AlarmStatus.ALARM)
