"""
Scaling policies: what to do to a fleet's desired capacity when an alarm
goes off, and how long to hold off afterwards.
"""
from decimal import Decimal, ROUND_UP

import attr

from constantly import NamedConstant, Names

from effect import Effect
from effect.do import do

from keel.log.intents import msg
from keel.provider import SetFleetDesiredCapacity


class AdjustmentType(Names):
    """How a policy's ``adjustment`` is applied to desired capacity."""

    CHANGE = NamedConstant()
    """
    Add ``adjustment`` (negative to scale down).
    """

    CHANGE_PERCENT = NamedConstant()
    """
    Add ``adjustment`` percent of the current desired capacity, rounded away
    from zero so that a non-zero percentage always changes something.
    """

    DESIRED_CAPACITY = NamedConstant()
    """
    Set desired capacity to ``adjustment``.
    """


@attr.s(frozen=True)
class ScalingPolicy(object):
    """
    :ivar str alarm: name of the :obj:`keel.autoscale.alarm.Alarm` whose
        transitions into ALARM fire this policy
    :ivar adjustment: signed number interpreted by ``adjustment_type``
    :ivar cooldown: seconds after firing during which the policy does
        nothing
    """
    policy_id = attr.ib()
    fleet_id = attr.ib()
    alarm = attr.ib()
    adjustment = attr.ib()
    cooldown = attr.ib(default=0)
    adjustment_type = attr.ib(default=AdjustmentType.CHANGE)


@attr.s(frozen=True)
class PolicyState(object):
    """
    :ivar last_executed: when the policy last changed desired capacity, or
        ``None``
    :ivar int executions: how many times it has
    """
    last_executed = attr.ib(default=None)
    executions = attr.ib(default=0)

    def in_cooldown(self, policy, now):
        """Is ``policy`` cooling down at time ``now``?"""
        return (self.last_executed is not None and
                now - self.last_executed < policy.cooldown)


def calculate_desired(policy, fleet):
    """
    Work out the desired capacity ``policy`` asks for, truncated to the
    fleet's bounds.

    :return: ``int``
    """
    current = fleet.desired
    if policy.adjustment_type == AdjustmentType.CHANGE_PERCENT:
        change = int((current * (Decimal(policy.adjustment) / 100))
                     .to_integral_value(ROUND_UP))
        desired = current + change
    elif policy.adjustment_type == AdjustmentType.DESIRED_CAPACITY:
        desired = policy.adjustment
    else:
        desired = current + policy.adjustment
    return max(min(desired, fleet.max_size), fleet.min_size)


@do
def execute_policy(policy, policy_state, fleet, now):
    """
    Fire ``policy`` unless it is cooling down. If the desired capacity it
    calculates differs from the fleet's, the provider is told and the
    policy's cooldown starts; otherwise nothing changes.

    :param now: current time in seconds

    :return: Effect of ``(fleet, policy_state)`` as they are afterwards
    """
    if policy_state.in_cooldown(policy, now):
        yield msg('policy-cooldown-active', policy_id=policy.policy_id,
                  fleet_id=fleet.fleet_id,
                  seconds_since_executed=now - policy_state.last_executed,
                  cooldown=policy.cooldown)
        return fleet, policy_state

    desired = calculate_desired(policy, fleet)
    if desired == fleet.desired:
        yield msg('policy-no-change', policy_id=policy.policy_id,
                  fleet_id=fleet.fleet_id, desired=desired)
        return fleet, policy_state

    yield Effect(SetFleetDesiredCapacity(fleet_id=fleet.fleet_id,
                                         desired=desired))
    yield msg('policy-executed', policy_id=policy.policy_id,
              fleet_id=fleet.fleet_id, previous_desired=fleet.desired,
              desired=desired, audit_log=True)
    return (attr.evolve(fleet, desired=desired),
            PolicyState(last_executed=now,
                        executions=policy_state.executions + 1))
