"""
Fleets of interchangeable instances and the lifecycle of each instance.

An instance starts PENDING and becomes IN_SERVICE once its readiness probe
passes. One that never passes within the grace period, or that later fails
its probe, goes UNHEALTHY and is then terminated (TERMINATING, TERMINATED);
reconciling capacity replaces it. Only IN_SERVICE instances get traffic.
"""
import attr

from constantly import NamedConstant, Names

from effect import Effect, parallel
from effect.do import do

from pyrsistent import pmap

from keel.graph import ResourceDeclaration
from keel.log.intents import err, msg
from keel.provider import (
    DescribeHealth, Health, LaunchInstance, TerminateInstance)


class InstanceState(Names):
    """Lifecycle states of an instance."""
    PENDING = NamedConstant()
    IN_SERVICE = NamedConstant()
    UNHEALTHY = NamedConstant()
    TERMINATING = NamedConstant()
    TERMINATED = NamedConstant()


LIVE_STATES = frozenset([InstanceState.PENDING, InstanceState.IN_SERVICE])


@attr.s(frozen=True)
class Instance(object):
    """
    :ivar launched_at: when the instance was launched, in seconds
    :ivar changed_at: when it last changed state
    """
    instance_id = attr.ib()
    state = attr.ib(default=InstanceState.PENDING)
    launched_at = attr.ib(default=0)
    changed_at = attr.ib(default=0)


@attr.s(frozen=True)
class Fleet(object):
    """
    A group of instances whose size is kept between ``min_size`` and
    ``max_size``. A ``desired`` outside of those bounds is clamped to them.

    :ivar PMap instances: instance id -> :obj:`Instance`
    """
    fleet_id = attr.ib()
    min_size = attr.ib()
    max_size = attr.ib()
    desired = attr.ib()
    instances = attr.ib(default=pmap(), converter=pmap)

    def __attrs_post_init__(self):
        if self.min_size > self.max_size:
            raise ValueError(
                "Fleet {0!r} has min_size {1} greater than max_size "
                "{2}".format(self.fleet_id, self.min_size, self.max_size))
        object.__setattr__(
            self, 'desired',
            max(min(self.desired, self.max_size), self.min_size))

    def live_instances(self):
        """Instances that are PENDING or IN_SERVICE."""
        return [i for i in self.instances.values() if i.state in LIVE_STATES]


def routable_instances(fleet):
    """
    Instances that may receive traffic: IN_SERVICE only.

    :return: ``list`` of :obj:`Instance` sorted by id
    """
    return sorted((i for i in fleet.instances.values()
                   if i.state == InstanceState.IN_SERVICE),
                  key=lambda i: i.instance_id)


def instance_transition(instance, health, now, grace_period):
    """
    Work out an instance's new state from a probe result.

    :param health: :obj:`Health` reported by the probe
    :param grace_period: seconds a PENDING instance has to pass its probe

    :return: :obj:`Instance`, the same one if nothing changed
    """
    state = instance.state
    if state == InstanceState.PENDING:
        if health == Health.HEALTHY:
            state = InstanceState.IN_SERVICE
        elif now - instance.launched_at >= grace_period:
            state = InstanceState.UNHEALTHY
    elif state == InstanceState.IN_SERVICE and health == Health.UNHEALTHY:
        state = InstanceState.UNHEALTHY
    if state == instance.state:
        return instance
    return attr.evolve(instance, state=state, changed_at=now)


def _probe(instance):
    return Effect(DescribeHealth(instance.instance_id)).on(
        error=lambda e: err(e, 'instance-probe-failed',
                            instance_id=instance.instance_id).on(
            lambda _: Health.UNKNOWN))


def _terminate(fleet_id, instance):
    """Effect of whether ``instance`` was terminated."""
    return Effect(TerminateInstance(fleet_id=fleet_id,
                                    instance_id=instance.instance_id)).on(
        success=lambda _: True,
        error=lambda e: err(e, 'instance-terminate-failed',
                            instance_id=instance.instance_id).on(
            lambda _: False))


@do
def _terminate_all(fleet, instances, now):
    """
    Terminate ``instances``, which must all be in ``fleet``. Terminated ones
    go TERMINATED, which is logged, and are removed from the fleet; the
    others are left TERMINATING to be tried again.
    """
    current = dict(fleet.instances)
    for instance in instances:
        current[instance.instance_id] = attr.evolve(
            instance, state=InstanceState.TERMINATING, changed_at=now)
    results = yield parallel([_terminate(fleet.fleet_id, instance)
                              for instance in instances])
    for instance, terminated in zip(instances, results):
        if terminated:
            done = attr.evolve(instance, state=InstanceState.TERMINATED,
                               changed_at=now)
            yield msg('instance-terminated', instance_id=done.instance_id,
                      previous_state=instance.state, state=done.state,
                      changed_at=done.changed_at)
            del current[done.instance_id]
    return attr.evolve(fleet, instances=current)


@do
def check_health(fleet, now, grace_period):
    """
    Probe every PENDING and IN_SERVICE instance, apply the results, and
    terminate the instances that are unhealthy, or that were already
    terminating.

    A probe that fails counts as :obj:`Health.UNKNOWN`.

    :return: Effect of the updated :obj:`Fleet`
    """
    probed = sorted(fleet.live_instances(), key=lambda i: i.instance_id)
    healths = yield parallel([_probe(instance) for instance in probed])
    current = dict(fleet.instances)
    for instance, health in zip(probed, healths):
        updated = instance_transition(instance, health, now, grace_period)
        if updated is not instance:
            yield msg('instance-state-changed',
                      instance_id=instance.instance_id, health=health,
                      previous_state=instance.state, state=updated.state)
            current[instance.instance_id] = updated
    fleet = attr.evolve(fleet, instances=current)

    doomed = sorted((i for i in fleet.instances.values()
                     if i.state in (InstanceState.UNHEALTHY,
                                    InstanceState.TERMINATING)),
                    key=lambda i: i.instance_id)
    if doomed:
        fleet = yield _terminate_all(fleet, doomed, now)
    return fleet


@do
def reconcile_capacity(fleet, now):
    """
    Launch instances while there are fewer live ones than desired, or
    terminate the extra ones if there are more: pending instances first,
    then the most recently launched.

    :return: Effect of the updated :obj:`Fleet`
    """
    live = fleet.live_instances()
    shortfall = fleet.desired - len(live)
    if shortfall > 0:
        launched = yield parallel([
            Effect(LaunchInstance(fleet_id=fleet.fleet_id)).on(
                error=lambda e: err(e, 'instance-launch-failed').on(
                    lambda _: None))
            for _ in range(shortfall)])
        current = dict(fleet.instances)
        for instance_id in launched:
            if instance_id is not None:
                yield msg('instance-launched', instance_id=instance_id)
                current[instance_id] = Instance(
                    instance_id=instance_id, state=InstanceState.PENDING,
                    launched_at=now, changed_at=now)
        fleet = attr.evolve(fleet, instances=current)
    elif shortfall < 0:
        extras = sorted(live, key=lambda i: (i.state != InstanceState.PENDING,
                                             -i.launched_at,
                                             i.instance_id))[:-shortfall]
        yield msg('fleet-scale-down', excess=-shortfall,
                  instance_ids=[i.instance_id for i in extras])
        fleet = yield _terminate_all(fleet, extras, now)
    return fleet


def fleet_declaration(fleet):
    """
    The declaration through which a fleet takes part in convergence. Desired
    capacity is left out: it belongs to the autoscaling controller, and
    including it would make every scaling action look like drift.
    """
    return ResourceDeclaration(
        node_id=fleet_node_id(fleet.fleet_id), kind='fleet',
        attributes={'fleet_id': fleet.fleet_id, 'min_size': fleet.min_size,
                    'max_size': fleet.max_size})


def fleet_node_id(fleet_id):
    """Node id of a fleet's declaration."""
    return 'fleet:{0}'.format(fleet_id)
