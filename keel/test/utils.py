"""
Mixins and utilities to be used for testing.
"""
from itertools import count

import attr

from effect import raise_

from kazoo.exceptions import BadVersionError, NoNodeError, NodeExistsError

import mock

from testtools.matchers import Mismatch

from twisted.internet.defer import Deferred, fail, succeed
from twisted.python.failure import Failure

from zope.interface import implementer

from keel.effect_dispatcher import get_full_dispatcher
from keel.graph import ResourceDeclaration
from keel.lock import InMemoryLockManager
from keel.log.bound import BoundLog, bound_log_kwargs
from keel.provider import Health, IResourceProvider, ProviderResult
from keel.state import InMemoryStateStore
from keel.util.config import set_config_data


class matches(object):
    """
    A helper for using `testtools matchers
    <http://testtools.readthedocs.org/en/latest/for-test-authors.html#matchers>`_
    with mock.

    It allows testtools matchers to be used in places where comparisons for
    equality would normally be used, such as the ``mock.Mock.assert_*``
    methods.

    :param matcher: A testtools matcher that will be matched when this object
        is compared to another object.
    """
    def __init__(self, matcher):
        self._matcher = matcher
        self._last_match = None

    def __eq__(self, other):
        self._last_match = self._matcher.match(other)
        return self._last_match is None

    def __ne__(self, other):
        return not self == other

    def __repr__(self):
        if self._last_match:
            return 'matches({}): <mismatch: {}>'.format(
                self._matcher, self._last_match.describe())
        return 'matches({0!s})'.format(self._matcher)


class IsBoundWith(object):
    """
    Match if BoundLog is bound with given args
    """
    def __init__(self, **kwargs):
        self.kwargs = kwargs

    def __str__(self):
        return 'IsBoundWith {}'.format(self.kwargs)

    def match(self, log):
        """
        Return None if log is bound with given kwargs. Otherwise return
        Mismatch
        """
        if not isinstance(log, BoundLog):
            return Mismatch('log is not a BoundLog')
        kwargs = bound_log_kwargs(log)
        if self.kwargs == kwargs:
            return None
        return Mismatch('Expected kwargs {} but got {} instead'.format(
            self.kwargs, kwargs))


def mock_log(*args, **kwargs):
    """
    Returns a BoundLog whose msg and err methods are mocks.  Makes it easier
    to test logging, since instead of making a mock object and testing::

        log.bind.return_value.msg.assert_called_with(...)

    This can be done instead::

        log.msg.assert_called_with(mock.ANY, bound_value1="val", ...)
    """
    msg = mock.Mock(spec=[])
    msg.return_value = None
    err = mock.Mock(spec=[])
    err.return_value = None
    return BoundLog(msg, err)


def logged_messages(log):
    """
    The first positional argument of every ``msg`` call made on a
    :func:`mock_log`.
    """
    return [c[0][0] for c in log.msg.call_args_list]


class CheckFailure(object):
    """
    Compares equal to a :obj:`Failure` wrapping an exception of
    ``exception_type``, for use in ``assert_called_with``.
    """
    def __init__(self, exception_type):
        self.exception_type = exception_type

    def __eq__(self, other):
        return isinstance(other, Failure) and other.check(
            self.exception_type)

    def __ne__(self, other):
        return not self == other


class DummyException(Exception):
    """
    Fake exception
    """


def set_config_for_test(testcase, data):
    """
    Set config data for test. Will reset to {} after test is run
    """
    set_config_data(data)
    testcase.addCleanup(set_config_data, {})


def noop(_):
    """Ignore input and return None."""


def const(v):
    """
    Return function that takes an argument but always return given `v`.
    Useful with `SequenceDispatcher`.
    """
    return lambda i: v


def conste(e):
    """
    Like ``const`` but takes and exception and returns function that raises
    the exception
    """
    return lambda i: raise_(e)


@implementer(IResourceProvider)
class FakeProvider(object):
    """
    An in-memory :obj:`IResourceProvider`.

    Applying a resource reports its attributes back with an ``id`` output
    added. Failures are scripted per resource or instance: every call pops
    the next exception from the relevant list and raises it.

    :ivar applied: ``(node_id, action, attributes)`` of every apply call
    :ivar deleted: ``node_id`` of every delete call, in order
    :ivar held: node ids whose apply returns an unfired Deferred; the
        Deferreds are put in ``waiting``
    :ivar after_apply: called with ``(node, action)`` on every successful
        apply, to simulate somebody else acting at the same time
    """
    def __init__(self):
        self.applied = []
        self.deleted = []
        self.apply_failures = {}
        self.delete_failures = {}
        self.held = set()
        self.waiting = {}
        self.after_apply = None
        self.health = {}
        self.desired = {}
        self.streams = {}
        self.stream_requests = []
        self.launched = []
        self.launch_failures = []
        self.terminated = []
        self.terminate_failures = {}
        self._ids = count(1)

    def _fail(self, failures, key):
        pending = failures.get(key)
        if pending:
            raise pending.pop(0)

    def apply(self, node, action):
        self._fail(self.apply_failures, node.node_id)
        self.applied.append((node.node_id, action, node.attributes))
        attributes = node.attributes.set('id', 'id-{0}'.format(node.node_id))
        if self.after_apply is not None:
            self.after_apply(node, action)
        if node.node_id in self.held:
            d = Deferred()
            self.waiting[node.node_id] = d
            return d.addCallback(lambda _: ProviderResult(attributes))
        return ProviderResult(attributes)

    def delete(self, node_id, kind, attributes):
        self._fail(self.delete_failures, node_id)
        self.deleted.append(node_id)

    def describe_health(self, instance_id):
        health = self.health.get(instance_id, Health.HEALTHY)
        if isinstance(health, Exception):
            raise health
        return health

    def set_fleet_desired_capacity(self, fleet_id, desired):
        self.desired[fleet_id] = desired

    def stream_metric(self, fleet_id, metric_name):
        self.stream_requests.append((fleet_id, metric_name))
        return iter(self.streams.get(fleet_id, []))

    def launch_instance(self, fleet_id):
        if self.launch_failures:
            raise self.launch_failures.pop(0)
        instance_id = 'i-{0}'.format(next(self._ids))
        self.launched.append(instance_id)
        return instance_id

    def terminate_instance(self, fleet_id, instance_id):
        self._fail(self.terminate_failures, instance_id)
        self.terminated.append(instance_id)


def make_fake_provider(reactor, config):
    """A provider factory, as named by the ``provider`` config key."""
    return FakeProvider()


def memory_dispatcher(clock, provider, log=None, call_timeout=10):
    """
    A dispatcher performing every keel intent with in-memory backends.

    :return: ``(dispatcher, InMemoryStateStore, InMemoryLockManager)``
    """
    store = InMemoryStateStore()
    locks = InMemoryLockManager(clock)
    dispatcher = get_full_dispatcher(
        clock, log if log is not None else mock_log(), provider,
        call_timeout, store, locks)
    return dispatcher, store, locks


@attr.s
class ZNodeStatStub(object):
    """Like a :obj:`ZnodeStat`, but only supporting the data we need."""
    version = attr.ib()
    mzxid = attr.ib()


class ZKCrudModel(object):
    """
    A simplified model of txkazoo's CRUD operations, supporting
    version-check-and-set. Every change gets the next zxid, like ZooKeeper
    does.

    Parent znodes are implicit: a path has children if any stored path is
    below it.
    """
    def __init__(self):
        self.nodes = {}
        self._zxid = count(1)

    def _stat(self, path):
        _, version, mzxid = self.nodes[path]
        return ZNodeStatStub(version=version, mzxid=mzxid)

    def create(self, path, value=b"", makepath=False, include_data=False):
        """Create a node."""
        assert makepath
        if path in self.nodes:
            return fail(NodeExistsError("{} already exists".format(path)))
        self.nodes[path] = (value, 0, next(self._zxid))
        if include_data:
            return succeed((path, self._stat(path)))
        return succeed(path)

    def get(self, path):
        """Get content of the node, and stat info."""
        if path not in self.nodes:
            return fail(NoNodeError("{} does not exist".format(path)))
        return succeed((self.nodes[path][0], self._stat(path)))

    def _check_version(self, path, version):
        if path not in self.nodes:
            return fail(NoNodeError("{} does not exist".format(path)))
        current = self.nodes[path][1]
        if version != -1 and current != version:
            return fail(BadVersionError(
                "When operating on {}, version {} was specified but "
                "version {} was found".format(path, version, current)))

    def set(self, path, value, version=-1):
        """Set the content of a node."""
        check = self._check_version(path, version)
        if check is not None:
            return check
        self.nodes[path] = (value, self.nodes[path][1] + 1, next(self._zxid))
        return succeed(self._stat(path))

    def delete(self, path, version=-1):
        """Delete a node."""
        check = self._check_version(path, version)
        if check is not None:
            return check
        del self.nodes[path]
        return succeed('delete return value')

    def get_children(self, path):
        """Names of the direct children of a node."""
        prefix = path.rstrip('/') + '/'
        children = set(p[len(prefix):].split('/')[0]
                       for p in self.nodes if p.startswith(prefix))
        if not children and path not in self.nodes:
            return fail(NoNodeError("{} does not exist".format(path)))
        return succeed(sorted(children))


def decl(node_id, depends_on=(), kind='thing', **attributes):
    """Shorthand for a :obj:`ResourceDeclaration`."""
    return ResourceDeclaration(node_id=node_id, kind=kind,
                               attributes=attributes, depends_on=depends_on)
