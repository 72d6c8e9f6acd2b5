"""
Leases giving one holder at a time exclusive use of a scope.

A lease has a fixed duration and must be renewed before it runs out. There is
no waiting for a lease: acquiring one that is held and unexpired fails
straight away with :obj:`LockHeldError`. Once a lease has expired anybody may
take it over, and from then on the previous holder's renew and release fail
with :obj:`LockExpiredError`.
"""
import uuid

import attr

from effect import Effect, TypeDispatcher, sync_performer


@attr.s(frozen=True)
class Lease(object):
    """
    A granted lease.

    :ivar str token: unique per grant; it is what distinguishes a holder from
        a later holder with the same name
    :ivar acquired_at: time of the grant or of the last renewal
    """
    scope = attr.ib()
    holder = attr.ib()
    token = attr.ib()
    acquired_at = attr.ib()
    duration = attr.ib()

    @property
    def expires_at(self):
        return self.acquired_at + self.duration

    def expired(self, now):
        """Has this lease run out at time ``now``?"""
        return now >= self.expires_at


class LockHeldError(Exception):
    """
    Raised when trying to acquire a lease that somebody holds.
    """
    def __init__(self, scope, holder, expires_at):
        super(LockHeldError, self).__init__(
            "Lease on {0!r} is held by {1!r} until {2}".format(
                scope, holder, expires_at))
        self.scope = scope
        self.holder = holder
        self.expires_at = expires_at


class LockExpiredError(Exception):
    """
    Raised when renewing or releasing a lease that has expired or has been
    taken over.
    """
    def __init__(self, lease):
        super(LockExpiredError, self).__init__(
            "Lease on {0!r} held by {1!r} is no longer valid".format(
                lease.scope, lease.holder))
        self.lease = lease


@attr.s
class AcquireLease(object):
    """
    Intent to acquire a lease on ``scope`` for ``duration`` seconds. Results
    in a :obj:`Lease`.
    """
    scope = attr.ib()
    holder = attr.ib()
    duration = attr.ib()


@attr.s
class RenewLease(object):
    """
    Intent to extend a lease by its duration from now. Results in the renewed
    :obj:`Lease`.
    """
    lease = attr.ib(validator=attr.validators.instance_of(Lease))


@attr.s
class ReleaseLease(object):
    """Intent to give up a lease."""
    lease = attr.ib(validator=attr.validators.instance_of(Lease))


def acquire_lease(scope, holder, duration):
    """Return Effect of :obj:`AcquireLease`."""
    return Effect(AcquireLease(scope=scope, holder=holder,
                               duration=duration))


def renew_lease(lease):
    """Return Effect of :obj:`RenewLease`."""
    return Effect(RenewLease(lease=lease))


def release_lease(lease):
    """Return Effect of :obj:`ReleaseLease`."""
    return Effect(ReleaseLease(lease=lease))


def random_token():
    return uuid.uuid4().hex


class InMemoryLockManager(object):
    """
    Lock manager keeping leases in memory.

    :param clock: ``IReactorTime`` giving the current time
    :param new_token: no-argument callable returning a fresh token
    """
    def __init__(self, clock, new_token=random_token):
        self.clock = clock
        self.new_token = new_token
        self.leases = {}

    def _current(self, lease):
        current = self.leases.get(lease.scope)
        if current is None or current.token != lease.token:
            raise LockExpiredError(lease)
        return current

    def acquire(self, scope, holder, duration):
        """See :obj:`AcquireLease`."""
        now = self.clock.seconds()
        current = self.leases.get(scope)
        if current is not None and not current.expired(now):
            raise LockHeldError(scope, current.holder, current.expires_at)
        lease = Lease(scope=scope, holder=holder, token=self.new_token(),
                      acquired_at=now, duration=duration)
        self.leases[scope] = lease
        return lease

    def renew(self, lease):
        """See :obj:`RenewLease`."""
        now = self.clock.seconds()
        current = self._current(lease)
        if current.expired(now):
            raise LockExpiredError(lease)
        renewed = attr.evolve(current, acquired_at=now)
        self.leases[lease.scope] = renewed
        return renewed

    def release(self, lease):
        """See :obj:`ReleaseLease`."""
        self._current(lease)
        del self.leases[lease.scope]

    def get_dispatcher(self):
        """
        Get a dispatcher performing the lease intents against this manager.
        """
        return TypeDispatcher({
            AcquireLease: sync_performer(
                lambda d, i: self.acquire(i.scope, i.holder, i.duration)),
            RenewLease: sync_performer(lambda d, i: self.renew(i.lease)),
            ReleaseLease: sync_performer(lambda d, i: self.release(i.lease)),
        })
