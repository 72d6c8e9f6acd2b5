"""
The state store: a durable record, per lock scope, of what was last applied
for each resource.

Every access is an intent, so the convergence code does not know which
backend it talks to. Writes and deletes are compare-and-swap operations on
the ``version`` of the stored :obj:`ActualState`; :obj:`InMemoryStateStore`
provides performers for tests and single-process use and
:mod:`keel.zk` provides ZooKeeper-backed ones.
"""
import attr

from effect import TypeDispatcher, sync_performer

from pyrsistent import freeze, pmap, pvector, thaw


@attr.s(frozen=True)
class ActualState(object):
    """
    What is known about a provisioned resource.

    :ivar PMap attributes: attributes last reported by the provider
    :ivar version: version assigned by the store on write; ``None`` for a
        state that has not been stored yet
    :ivar str fingerprint: fingerprint of the desired attributes at the last
        successful apply
    :ivar str kind: the resource kind at the last apply
    :ivar dependencies: ids the resource depended on at the last apply
    """
    attributes = attr.ib(converter=freeze)
    fingerprint = attr.ib()
    kind = attr.ib()
    dependencies = attr.ib(default=pvector(), converter=pvector)
    version = attr.ib(default=None)

    def to_json(self):
        """
        Serialize everything but the version, which backends store out of
        band.
        """
        return {
            'attributes': thaw(self.attributes),
            'fingerprint': self.fingerprint,
            'kind': self.kind,
            'dependencies': list(self.dependencies)}

    @classmethod
    def from_json(cls, data, version):
        """Inverse of :meth:`to_json`."""
        return cls(attributes=data['attributes'],
                   fingerprint=data['fingerprint'],
                   kind=data['kind'],
                   dependencies=data.get('dependencies', []),
                   version=version)


class ConflictError(Exception):
    """
    Raised when a write or delete presented a version that is no longer the
    stored one.
    """
    def __init__(self, scope, node_id, expected_version, found_version):
        super(ConflictError, self).__init__(
            "State of {0!r} in scope {1!r} is at version {2!r}, "
            "expected {3!r}".format(node_id, scope, found_version,
                                    expected_version))
        self.scope = scope
        self.node_id = node_id
        self.expected_version = expected_version
        self.found_version = found_version


@attr.s
class ReadState(object):
    """
    Intent to read the stored :obj:`ActualState` of a resource. Results in
    ``None`` if nothing is stored.
    """
    scope = attr.ib()
    node_id = attr.ib()


@attr.s
class WriteState(object):
    """
    Intent to store a resource's :obj:`ActualState`.

    :ivar expected_version: version last read, or ``None`` if nothing was
        stored. Results in the stored state with its new version, or fails
        with :obj:`ConflictError`.
    """
    scope = attr.ib()
    node_id = attr.ib()
    state = attr.ib(validator=attr.validators.instance_of(ActualState))
    expected_version = attr.ib()


@attr.s
class DeleteState(object):
    """
    Intent to remove a resource's state entirely. Fails with
    :obj:`ConflictError` if the stored version is not ``expected_version``.
    """
    scope = attr.ib()
    node_id = attr.ib()
    expected_version = attr.ib()


@attr.s
class ListStates(object):
    """
    Intent to read every stored state in a scope. Results in a PMap of node
    id to :obj:`ActualState`.
    """
    scope = attr.ib()


class InMemoryStateStore(object):
    """
    State store keeping everything in memory. Versions come from one
    counter per scope, so they increase monotonically even across a delete
    and re-create of the same resource.
    """
    def __init__(self):
        self.scopes = {}
        self.serials = {}

    def _entries(self, scope):
        return self.scopes.setdefault(scope, {})

    def read(self, scope, node_id):
        """See :obj:`ReadState`."""
        return self._entries(scope).get(node_id)

    def write(self, scope, node_id, state, expected_version):
        """See :obj:`WriteState`."""
        entries = self._entries(scope)
        current = entries.get(node_id)
        found = current.version if current is not None else None
        if found != expected_version:
            raise ConflictError(scope, node_id, expected_version, found)
        self.serials[scope] = self.serials.get(scope, 0) + 1
        stored = attr.evolve(state, version=self.serials[scope])
        entries[node_id] = stored
        return stored

    def delete(self, scope, node_id, expected_version):
        """See :obj:`DeleteState`."""
        entries = self._entries(scope)
        current = entries.get(node_id)
        found = current.version if current is not None else None
        if current is None or found != expected_version:
            raise ConflictError(scope, node_id, expected_version, found)
        del entries[node_id]

    def list(self, scope):
        """See :obj:`ListStates`."""
        return pmap(self._entries(scope))

    def get_dispatcher(self):
        """
        Get a dispatcher performing the state intents against this store.
        """
        return TypeDispatcher({
            ReadState: sync_performer(
                lambda d, i: self.read(i.scope, i.node_id)),
            WriteState: sync_performer(
                lambda d, i: self.write(i.scope, i.node_id, i.state,
                                        i.expected_version)),
            DeleteState: sync_performer(
                lambda d, i: self.delete(i.scope, i.node_id,
                                         i.expected_version)),
            ListStates: sync_performer(lambda d, i: self.list(i.scope)),
        })


def stored_version(state):
    """
    The version to present when replacing ``state``, which may be ``None``.
    """
    return state.version if state is not None else None


__all__ = ['ActualState', 'ConflictError', 'ReadState', 'WriteState',
           'DeleteState', 'ListStates', 'InMemoryStateStore',
           'stored_version']
