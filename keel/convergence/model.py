"""
Data classes shared by the planning, effecting and service parts of
convergence.
"""
import attr

from constantly import NamedConstant, Names

from pyrsistent import PMap, pmap, pvector


class PlanAction(Names):
    """
    What has to be done to a resource to make it match its declaration.
    """
    CREATE = NamedConstant()
    UPDATE = NamedConstant()
    DELETE = NamedConstant()
    NOOP = NamedConstant()


class NodeOutcome(Names):
    """
    How a resource ended up after a convergence run.
    """

    APPLIED = NamedConstant()
    """
    The provider was called and the new state was stored.
    """

    NOOP = NamedConstant()
    """
    The stored state already matched the declaration.
    """

    FAILED = NamedConstant()
    """
    The provider failed permanently, or transiently too many times.
    """

    BLOCKED = NamedConstant()
    """
    Not attempted because a dependency did not succeed, or a reference could
    not be resolved.
    """

    CANCELLED = NamedConstant()
    """
    Not attempted because the run was cancelled first.
    """


SUCCESSFUL_OUTCOMES = frozenset([NodeOutcome.APPLIED, NodeOutcome.NOOP])


@attr.s(frozen=True)
class NodeResult(object):
    """
    Outcome of converging one resource.

    :ivar action: the :obj:`PlanAction` decided on, or ``None`` if the node
        never got as far as planning
    :ivar reasons: short human readable strings explaining the outcome
    """
    outcome = attr.ib()
    action = attr.ib(default=None)
    reasons = attr.ib(default=pvector(), converter=pvector)

    @property
    def succeeded(self):
        return self.outcome in SUCCESSFUL_OUTCOMES


@attr.s(frozen=True)
class ConvergenceReport(object):
    """
    Result of a convergence run.

    :ivar PMap results: node id -> :obj:`NodeResult`, for declared resources
        and for stored resources that are no longer declared
    :ivar order: node ids in the order they should be displayed
    :ivar bool lease_lost: whether the run was cut short because the lease
        could not be renewed
    """
    scope = attr.ib()
    results = attr.ib(default=pmap(),
                      validator=attr.validators.instance_of(PMap))
    order = attr.ib(default=pvector(), converter=pvector)
    lease_lost = attr.ib(default=False)

    @property
    def succeeded(self):
        """
        True only if every resource was applied or was already converged.
        """
        return (not self.lease_lost and
                all(r.succeeded for r in self.results.values()))

    def outcomes(self):
        """
        :return: PMap of node id -> :obj:`NodeOutcome`
        """
        return pmap((node_id, r.outcome)
                    for node_id, r in self.results.items())

    def as_table(self):
        """
        Render the per-resource outcome table followed by the overall status.
        """
        ids = list(self.order) + sorted(set(self.results) - set(self.order))
        rows = [('resource', 'action', 'outcome', 'reasons')]
        for node_id in ids:
            result = self.results[node_id]
            rows.append((
                node_id,
                result.action.name if result.action is not None else '-',
                result.outcome.name,
                '; '.join(result.reasons)))
        widths = [max(len(row[i]) for row in rows) for i in range(3)]
        lines = ['  '.join([cell.ljust(width)
                            for cell, width in zip(row[:3], widths)] +
                           [row[3]]).rstrip()
                 for row in rows]
        lines.append('{0}: {1}'.format(
            self.scope, 'SUCCEEDED' if self.succeeded else 'FAILED'))
        return '\n'.join(lines)


@attr.s(frozen=True)
class ConvergenceSettings(object):
    """
    Tunables of a convergence run.

    :ivar int parallelism: how many resources may be worked on at once
    :ivar int max_attempts: provider calls per resource, counting the first,
        before a transient error fails it
    :ivar float backoff: seconds to wait before the first retry; doubled
        after every retry
    :ivar int max_conflicts: how many version conflicts on one resource are
        re-read and re-planned before it is failed
    :ivar float lease_duration: seconds a lease lasts without renewal
    """
    parallelism = attr.ib(default=4)
    max_attempts = attr.ib(default=5)
    backoff = attr.ib(default=1.0)
    max_conflicts = attr.ib(default=3)
    lease_duration = attr.ib(default=60)
