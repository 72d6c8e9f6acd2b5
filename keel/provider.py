"""
The interface to whatever actually provisions resources and runs instances,
and the intents through which the rest of keel uses it.
"""
from functools import partial

import attr

from constantly import NamedConstant, Names

from effect import Effect, TypeDispatcher, sync_performer

from pyrsistent import freeze

from twisted.internet.defer import maybeDeferred

from txeffect import deferred_performer

from zope.interface import Interface

from keel.util.deferredutils import TimedOutError, timeout_deferred


class TransientError(Exception):
    """
    Raised by a provider when an operation failed in a way that may succeed
    if tried again, e.g. throttling or a network error.
    """


class PermanentError(Exception):
    """
    Raised by a provider when an operation can never succeed as requested,
    e.g. invalid attributes.
    """


class Health(Names):
    """Result of probing an instance."""
    HEALTHY = NamedConstant()
    UNHEALTHY = NamedConstant()
    UNKNOWN = NamedConstant()


@attr.s(frozen=True)
class ProviderResult(object):
    """
    Result of applying a resource.

    :ivar attributes: the resource's attributes as the provider sees them,
        including outputs that other resources may reference
    """
    attributes = attr.ib(converter=freeze)


class IResourceProvider(Interface):
    """
    Something that provisions resources and manages fleet instances. Every
    method may return its result directly or as a Deferred.
    """

    def apply(node, action):
        """
        Create or update a resource.

        :param node: :obj:`keel.graph.ResourceNode` with references resolved
        :param action: :obj:`keel.convergence.model.PlanAction`, CREATE or
            UPDATE
        :return: :obj:`ProviderResult`
        :raise: :obj:`TransientError` or :obj:`PermanentError`
        """

    def delete(node_id, kind, attributes):
        """
        Delete a resource that is no longer declared, given what was recorded
        about it.
        """

    def describe_health(instance_id):
        """
        :return: :obj:`Health` of the instance
        """

    def set_fleet_desired_capacity(fleet_id, desired):
        """
        Record the desired size of a fleet.
        """

    def stream_metric(fleet_id, metric_name):
        """
        :return: an iterator of Deferreds, each firing with the next
            :obj:`keel.autoscale.alarm.MetricSample`. Called again to restart
            a stream that failed or ran out.
        """

    def launch_instance(fleet_id):
        """
        Start a new instance in the fleet.

        :return: the new instance's id
        """

    def terminate_instance(fleet_id, instance_id):
        """
        Terminate an instance of the fleet.
        """


@attr.s
class ApplyResource(object):
    """Intent to call :meth:`IResourceProvider.apply`."""
    node = attr.ib()
    action = attr.ib()


@attr.s
class DeleteResource(object):
    """Intent to call :meth:`IResourceProvider.delete`."""
    node_id = attr.ib()
    kind = attr.ib()
    attributes = attr.ib()


@attr.s
class DescribeHealth(object):
    """Intent to call :meth:`IResourceProvider.describe_health`."""
    instance_id = attr.ib()


@attr.s
class SetFleetDesiredCapacity(object):
    """Intent to call :meth:`IResourceProvider.set_fleet_desired_capacity`."""
    fleet_id = attr.ib()
    desired = attr.ib()


@attr.s
class StreamMetric(object):
    """
    Intent to call :meth:`IResourceProvider.stream_metric`. Results in the
    iterator itself.
    """
    fleet_id = attr.ib()
    metric_name = attr.ib()


@attr.s
class LaunchInstance(object):
    """Intent to call :meth:`IResourceProvider.launch_instance`."""
    fleet_id = attr.ib()


@attr.s
class TerminateInstance(object):
    """Intent to call :meth:`IResourceProvider.terminate_instance`."""
    fleet_id = attr.ib()
    instance_id = attr.ib()


def _timed_out_as_transient(failure):
    failure.trap(TimedOutError)
    raise TransientError(str(failure.value))


@deferred_performer
def perform_provider_call(clock, timeout, method, args, dispatcher, intent):
    """
    Call ``method`` with the intent attributes named in ``args``. A call
    that takes longer than ``timeout`` seconds is cancelled and fails with
    :obj:`TransientError`.
    """
    d = maybeDeferred(method, *[getattr(intent, arg) for arg in args])
    timeout_deferred(d, timeout, clock, deferred_description=repr(intent))
    return d.addErrback(_timed_out_as_transient)


def get_provider_dispatcher(provider, clock, timeout):
    """
    Get a dispatcher performing provider intents with ``provider``.

    :param provider: an :obj:`IResourceProvider`
    :param clock: ``IReactorTime`` used to time out calls
    :param float timeout: seconds a provider call may take
    """
    def call(method, args):
        return partial(perform_provider_call, clock, timeout, method, args)

    return TypeDispatcher({
        ApplyResource: call(provider.apply, ('node', 'action')),
        DeleteResource: call(provider.delete,
                             ('node_id', 'kind', 'attributes')),
        DescribeHealth: call(provider.describe_health, ('instance_id',)),
        SetFleetDesiredCapacity: call(provider.set_fleet_desired_capacity,
                                      ('fleet_id', 'desired')),
        StreamMetric: sync_performer(
            lambda d, i: provider.stream_metric(i.fleet_id, i.metric_name)),
        LaunchInstance: call(provider.launch_instance, ('fleet_id',)),
        TerminateInstance: call(provider.terminate_instance,
                                ('fleet_id', 'instance_id')),
    })


def apply_resource(node, action):
    """Return Effect of :obj:`ApplyResource`."""
    return Effect(ApplyResource(node=node, action=action))
