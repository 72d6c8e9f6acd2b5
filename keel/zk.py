"""
ZooKeeper backends for the state store and the lock manager.

The ZooKeeper operations themselves are intents too, performed by
:func:`get_zk_dispatcher` with a ``TxKazooClient``.

State of a resource is kept in ``/keel/state/<scope>/<node id>`` as JSON.
The version of a stored :obj:`ActualState` is the ``mzxid`` of its znode,
which ZooKeeper increases on every change; compare-and-swap is done on the
znode's own ``version``. A lease is a single znode ``/keel/locks/<scope>``.
"""
import json
from functools import partial
from urllib.parse import quote, unquote

import attr

from effect import Effect, TypeDispatcher, parallel, sync_performer
from effect.do import do

from kazoo.exceptions import BadVersionError, NoNodeError, NodeExistsError

from pyrsistent import pmap

from txeffect import deferred_performer

from keel.lock import (
    AcquireLease, Lease, LockExpiredError, LockHeldError, ReleaseLease,
    RenewLease, random_token)
from keel.state import (
    ActualState, ConflictError, DeleteState, ListStates, ReadState,
    WriteState)


STATE_ROOT = '/keel/state'
LOCK_ROOT = '/keel/locks'

ACQUIRE_ATTEMPTS = 3
"""
How many times acquisition goes back to reading the lease znode when it
changes under it.
"""


@attr.s
class CreateNode(object):
    """
    Intent to create a znode, along with missing parents. Results in
    ``(path, ZnodeStat)``.
    """
    path = attr.ib()
    value = attr.ib(default=b"")


@attr.s
class GetNode(object):
    """Intent to get the content and ``ZnodeStat`` of a znode."""
    path = attr.ib()


@attr.s
class SetNode(object):
    """
    Intent to set a znode's content if its version is ``version``. Results in
    the new ``ZnodeStat``.
    """
    path = attr.ib()
    value = attr.ib()
    version = attr.ib(default=-1)


@attr.s
class DeleteNode(object):
    """Intent to delete a znode if its version is ``version``."""
    path = attr.ib()
    version = attr.ib(default=-1)


@attr.s
class GetChildren(object):
    """Intent to list the names of a znode's children."""
    path = attr.ib()


@deferred_performer
def perform_create(kz_client, dispatcher, intent):
    """Perform :obj:`CreateNode`."""
    return kz_client.create(intent.path, value=intent.value, makepath=True,
                            include_data=True)


@deferred_performer
def perform_get(kz_client, dispatcher, intent):
    """Perform :obj:`GetNode`."""
    return kz_client.get(intent.path)


@deferred_performer
def perform_set(kz_client, dispatcher, intent):
    """Perform :obj:`SetNode`."""
    return kz_client.set(intent.path, intent.value, version=intent.version)


@deferred_performer
def perform_delete(kz_client, dispatcher, intent):
    """Perform :obj:`DeleteNode`."""
    return kz_client.delete(intent.path, version=intent.version)


@deferred_performer
def perform_get_children(kz_client, dispatcher, intent):
    """Perform :obj:`GetChildren`."""
    return kz_client.get_children(intent.path)


def get_zk_dispatcher(kz_client):
    """
    Get a dispatcher that performs the ZooKeeper intents with a kazoo client.

    :param kz_client: a started ``TxKazooClient``
    """
    return TypeDispatcher({
        CreateNode: partial(perform_create, kz_client),
        GetNode: partial(perform_get, kz_client),
        SetNode: partial(perform_set, kz_client),
        DeleteNode: partial(perform_delete, kz_client),
        GetChildren: partial(perform_get_children, kz_client),
    })


def _encode(obj):
    return json.dumps(obj, sort_keys=True).encode('utf-8')


def _decode(content):
    return json.loads(content.decode('utf-8'))


def state_path(scope, node_id=None):
    """
    Path of the znode holding ``node_id``'s state, or of the scope's parent
    znode if ``node_id`` is not given.
    """
    path = '{0}/{1}'.format(STATE_ROOT, quote(scope, safe=''))
    if node_id is not None:
        path = '{0}/{1}'.format(path, quote(node_id, safe=''))
    return path


def lock_path(scope):
    """Path of the lease znode of ``scope``."""
    return '{0}/{1}'.format(LOCK_ROOT, quote(scope, safe=''))


@do
def read_state(scope, node_id):
    """
    Read the state of ``node_id``.

    :return: Effect of :obj:`ActualState` or ``None``
    """
    try:
        content, stat = yield Effect(GetNode(state_path(scope, node_id)))
    except NoNodeError:
        return None
    return ActualState.from_json(_decode(content), stat.mzxid)


@do
def _conflict(scope, node_id, expected_version):
    current = yield read_state(scope, node_id)
    found = current.version if current is not None else None
    raise ConflictError(scope, node_id, expected_version, found)


@do
def write_state(scope, node_id, state, expected_version):
    """
    Compare-and-swap the state of ``node_id``.

    :return: Effect of the stored :obj:`ActualState`
    """
    path = state_path(scope, node_id)
    content = _encode(state.to_json())
    if expected_version is None:
        try:
            _, stat = yield Effect(CreateNode(path, content))
        except NodeExistsError:
            yield _conflict(scope, node_id, expected_version)
    else:
        try:
            _, current = yield Effect(GetNode(path))
        except NoNodeError:
            raise ConflictError(scope, node_id, expected_version, None)
        if current.mzxid != expected_version:
            raise ConflictError(scope, node_id, expected_version,
                                current.mzxid)
        try:
            stat = yield Effect(SetNode(path, content, current.version))
        except (BadVersionError, NoNodeError):
            yield _conflict(scope, node_id, expected_version)
    return attr.evolve(state, version=stat.mzxid)


@do
def delete_state(scope, node_id, expected_version):
    """Compare-and-delete the state of ``node_id``."""
    path = state_path(scope, node_id)
    try:
        _, current = yield Effect(GetNode(path))
    except NoNodeError:
        raise ConflictError(scope, node_id, expected_version, None)
    if current.mzxid != expected_version:
        raise ConflictError(scope, node_id, expected_version, current.mzxid)
    try:
        yield Effect(DeleteNode(path, current.version))
    except (BadVersionError, NoNodeError):
        yield _conflict(scope, node_id, expected_version)


@do
def list_states(scope):
    """
    Read all stored states of a scope. States deleted while listing are
    skipped.

    :return: Effect of PMap of node id to :obj:`ActualState`
    """
    try:
        children = yield Effect(GetChildren(state_path(scope)))
    except NoNodeError:
        return pmap()
    node_ids = [unquote(child) for child in children]
    states = yield parallel([read_state(scope, node_id)
                             for node_id in node_ids])
    return pmap(dict((node_id, state)
                     for node_id, state in zip(node_ids, states)
                     if state is not None))


def get_zk_state_dispatcher():
    """
    Get a dispatcher performing the state store intents with ZooKeeper
    intents. It must be composed with :func:`get_zk_dispatcher`.
    """
    return TypeDispatcher({
        ReadState: sync_performer(
            lambda d, i: read_state(i.scope, i.node_id)),
        WriteState: sync_performer(
            lambda d, i: write_state(i.scope, i.node_id, i.state,
                                     i.expected_version)),
        DeleteState: sync_performer(
            lambda d, i: delete_state(i.scope, i.node_id,
                                      i.expected_version)),
        ListStates: sync_performer(lambda d, i: list_states(i.scope)),
    })


def _lease_record(lease):
    return {'holder': lease.holder, 'token': lease.token,
            'acquired_at': lease.acquired_at, 'duration': lease.duration}


def _lease_from_record(scope, content):
    record = _decode(content)
    return Lease(scope=scope, holder=record['holder'], token=record['token'],
                 acquired_at=record['acquired_at'],
                 duration=record['duration'])


@do
def acquire(clock, new_token, scope, holder, duration,
            attempts=ACQUIRE_ATTEMPTS):
    """
    Acquire the lease on ``scope``, taking it over if it has expired.

    :return: Effect of :obj:`Lease`
    """
    path = lock_path(scope)
    lease = Lease(scope=scope, holder=holder, token=new_token(),
                  acquired_at=clock.seconds(), duration=duration)
    try:
        yield Effect(CreateNode(path, _encode(_lease_record(lease))))
        return lease
    except NodeExistsError:
        pass

    try:
        content, stat = yield Effect(GetNode(path))
    except NoNodeError:
        content = stat = None

    if content is not None:
        current = _lease_from_record(scope, content)
        if not current.expired(clock.seconds()) or attempts <= 1:
            raise LockHeldError(scope, current.holder, current.expires_at)
        try:
            yield Effect(SetNode(path, _encode(_lease_record(lease)),
                                 stat.version))
            return lease
        except (BadVersionError, NoNodeError):
            pass
    elif attempts <= 1:
        raise LockHeldError(scope, None, None)

    result = yield acquire(clock, new_token, scope, holder, duration,
                           attempts - 1)
    return result


@do
def _current_lease(lease):
    try:
        content, stat = yield Effect(GetNode(lock_path(lease.scope)))
    except NoNodeError:
        raise LockExpiredError(lease)
    if _lease_from_record(lease.scope, content).token != lease.token:
        raise LockExpiredError(lease)
    return stat


@do
def renew(clock, lease):
    """
    Renew ``lease`` if it is still the current, unexpired one.

    :return: Effect of the renewed :obj:`Lease`
    """
    stat = yield _current_lease(lease)
    now = clock.seconds()
    if lease.expired(now):
        raise LockExpiredError(lease)
    renewed = attr.evolve(lease, acquired_at=now)
    try:
        yield Effect(SetNode(lock_path(lease.scope),
                             _encode(_lease_record(renewed)), stat.version))
    except (BadVersionError, NoNodeError):
        raise LockExpiredError(lease)
    return renewed


@do
def release(lease):
    """Release ``lease`` if it is still the current one."""
    stat = yield _current_lease(lease)
    try:
        yield Effect(DeleteNode(lock_path(lease.scope), stat.version))
    except (BadVersionError, NoNodeError):
        raise LockExpiredError(lease)


def get_zk_lock_dispatcher(clock, new_token=random_token):
    """
    Get a dispatcher performing the lease intents with ZooKeeper intents. It
    must be composed with :func:`get_zk_dispatcher`.
    """
    return TypeDispatcher({
        AcquireLease: sync_performer(
            lambda d, i: acquire(clock, new_token, i.scope, i.holder,
                                 i.duration)),
        RenewLease: sync_performer(lambda d, i: renew(clock, i.lease)),
        ReleaseLease: sync_performer(lambda d, i: release(i.lease)),
    })
