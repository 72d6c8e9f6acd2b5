"""
Convergence engine and service

The top-level entry points into this module are
:meth:`ConvergenceEngine.converge` and :obj:`ConvergenceService`.
"""

# # Note [Scheduling resources]
#
# A run works through the resources of one scope while holding the scope's
# lease:
# - acquire the lease, and renew it every half lease duration
# - list the stored states, to find resources that are no longer declared
#   (orphans)
# - repeatedly pick every pending resource whose dependencies are all
#   terminal and start it, while fewer than `parallelism` are in flight
# - when nothing is pending or in flight, release the lease and report
#
# Declared resources wait for the resources they depend on. Orphans wait for
# every resource whose *stored* state depends on them, so they are deleted in
# the reverse of the order they were created in. A resource whose dependency
# did not succeed is BLOCKED without being attempted.
#
# Performing an effect may complete synchronously (the in-memory backends
# do), so finishing a resource can re-enter `_pump` while it is already
# scheduling; the re-entrant call only asks the running one to go round
# again.

from effect import Effect

from pyrsistent import pmap

from twisted.application.internet import TimerService
from twisted.application.service import MultiService
from twisted.internet.defer import Deferred, succeed

from txeffect import perform

from keel.convergence.effecting import (
    converge_node, delete_orphan, error_reason)
from keel.convergence.model import (
    ConvergenceReport, ConvergenceSettings, NodeOutcome, NodeResult)
from keel.convergence.planning import deletion_blockers, find_orphans
from keel.graph import BuildError, build_graph
from keel.lock import (
    LockExpiredError, LockHeldError, acquire_lease, release_lease,
    renew_lease)
from keel.log import log as default_log
from keel.log.intents import msg_with_time, with_log
from keel.state import ListStates


class ConvergenceRun(object):
    """
    A single convergence run of one scope.

    :ivar deferred: fires with a :obj:`ConvergenceReport` once the run is over
        and the lease released, or fails with :obj:`LockHeldError` if the
        lease could not be acquired
    """

    def __init__(self, dispatcher, clock, settings, log, graph, scope,
                 holder):
        self.dispatcher = dispatcher
        self.clock = clock
        self.settings = settings
        self.log = log.bind(scope=scope, holder=holder)
        self.graph = graph
        self.scope = scope
        self.holder = holder
        self.deferred = Deferred()

        self.lease = None
        self.cancelled = False
        self.lease_lost = False
        self.finished = False
        self.pending = None
        self.order = list(graph.order)
        self.blockers = pmap()
        self.in_flight = set()
        self.results = {}
        self.outputs = {}
        self._renewal = None
        self._renewing = None
        self._pumping = False
        self._repump = False

    def _perform(self, eff):
        return perform(self.dispatcher, eff)

    def start(self):
        """Start the run by acquiring the lease."""
        d = self._perform(acquire_lease(self.scope, self.holder,
                                        self.settings.lease_duration))
        d.addCallbacks(self._acquired, self._not_acquired)

    def _not_acquired(self, failure):
        if failure.check(LockHeldError):
            self.log.msg('converge-lease-held',
                         lease_holder=failure.value.holder,
                         expires_at=failure.value.expires_at)
        else:
            self.log.err(failure, 'converge-lease-acquire-failed')
        self.finished = True
        self.deferred.errback(failure)

    def _acquired(self, lease):
        self.lease = lease
        self.log.msg('converge-lease-acquired', token=lease.token)
        self._schedule_renewal()
        d = self._perform(Effect(ListStates(self.scope)))
        d.addCallbacks(self._listed, self._list_failed)

    def _list_failed(self, failure):
        self.log.err(failure, 'converge-list-states-failed')
        self.finished = True
        self._cancel_renewal()
        d = self._release()
        d.addCallback(lambda _: failure)
        d.chainDeferred(self.deferred)

    def _listed(self, states):
        orphans = find_orphans(self.graph, states)
        self.blockers = deletion_blockers(self.graph, states)
        self.order = list(self.graph.order) + orphans
        self.pending = list(self.order)
        self.log.msg('converge-run-start', declared=len(self.graph.order),
                     orphans=orphans)
        self._pump()

    def _schedule_renewal(self):
        self._renewal = self.clock.callLater(
            self.settings.lease_duration / 2.0, self._renew)

    def _cancel_renewal(self):
        if self._renewal is not None and self._renewal.active():
            self._renewal.cancel()
        self._renewal = None

    def _renew(self):
        self._renewal = None

        def renewed(lease):
            self.lease = lease
            if not self.finished:
                self._schedule_renewal()

        def failed(failure):
            if failure.check(LockExpiredError):
                self.log.msg('converge-lease-lost')
                self.lease_lost = True
                self.cancel()
            else:
                self.log.err(failure, 'converge-lease-renew-failed')
                if not self.finished:
                    self._schedule_renewal()

        def done(_):
            self._renewing = None
            renewing.callback(None)

        renewing = self._renewing = Deferred()
        d = self._perform(renew_lease(self.lease))
        d.addCallbacks(renewed, failed)
        d.addCallback(done)

    def cancel(self):
        """
        Stop starting resources. Resources already in flight are allowed to
        finish; the ones not started yet are reported CANCELLED.
        """
        if self.finished or self.cancelled:
            return
        self.log.msg('converge-run-cancel')
        self.cancelled = True
        if self.pending is not None:
            self._pump()

    def _waiting_on(self, node_id):
        if node_id in self.graph:
            return self.graph.nodes[node_id].dependencies
        return self.blockers.get(node_id, ())

    def _record(self, node_id, result, outputs=None):
        self.results[node_id] = result
        if outputs is not None:
            self.outputs[node_id] = outputs
        self._repump = True

    def _schedule(self):
        for node_id in list(self.pending):
            if self.cancelled:
                self.pending.remove(node_id)
                self._record(node_id, NodeResult(NodeOutcome.CANCELLED,
                                                 reasons=['run cancelled']))
                continue
            waiting = self._waiting_on(node_id)
            if any(dep not in self.results for dep in waiting):
                continue
            unsuccessful = [dep for dep in waiting
                            if not self.results[dep].succeeded]
            if unsuccessful:
                self.pending.remove(node_id)
                self._record(node_id, NodeResult(
                    NodeOutcome.BLOCKED,
                    reasons=['{0} is {1}'.format(
                        dep, self.results[dep].outcome.name)
                        for dep in unsuccessful]))
            elif len(self.in_flight) < self.settings.parallelism:
                self._start(node_id)

    def _pump(self):
        if self.finished:
            return
        if self._pumping:
            self._repump = True
            return
        self._pumping = True
        try:
            self._repump = True
            while self._repump:
                self._repump = False
                self._schedule()
            if self.pending and not self.in_flight:
                # only orphans whose stored dependencies form a cycle get
                # here, and nothing can release them
                for node_id in self.pending:
                    self._record(node_id, NodeResult(
                        NodeOutcome.BLOCKED,
                        reasons=['deletion order is cyclic']))
                self.pending = []
        finally:
            self._pumping = False
        if not self.pending and not self.in_flight:
            self._finish()

    def _start(self, node_id):
        self.pending.remove(node_id)
        self.in_flight.add(node_id)
        if node_id in self.graph:
            eff = converge_node(self.scope, self.graph.nodes[node_id],
                                dict(self.outputs), self.settings)
        else:
            eff = delete_orphan(self.scope, node_id, self.settings).on(
                lambda result: (result, None))
        eff = msg_with_time('converge-node-time', eff)
        d = self._perform(with_log(eff, scope=self.scope, node_id=node_id))
        d.addErrback(self._node_error, node_id)
        d.addCallback(self._node_done, node_id)

    def _node_error(self, failure, node_id):
        self.log.err(failure, 'converge-node-error', node_id=node_id)
        return (NodeResult(NodeOutcome.FAILED,
                           reasons=[error_reason(failure.value)]),
                None)

    def _node_done(self, result, node_id):
        node_result, outputs = result
        self.in_flight.discard(node_id)
        self.log.msg('converge-node-done', node_id=node_id,
                     outcome=node_result.outcome, action=node_result.action,
                     reasons=list(node_result.reasons))
        self._record(node_id, node_result, outputs)
        self._pump()

    def _release(self):
        # a renewal in flight would change the lease under the release
        if self._renewing is not None:
            d = self._renewing.addCallback(
                lambda _: self._perform(release_lease(self.lease)))
        else:
            d = self._perform(release_lease(self.lease))

        def release_failed(failure):
            if failure.check(LockExpiredError):
                self.log.msg('converge-lease-release-expired')
            else:
                self.log.err(failure, 'converge-lease-release-failed')

        return d.addErrback(release_failed)

    def _finish(self):
        self.finished = True
        self._cancel_renewal()
        report = ConvergenceReport(scope=self.scope, results=pmap(self.results),
                                   order=self.order,
                                   lease_lost=self.lease_lost)
        self.log.msg('converge-run-finished', succeeded=report.succeeded,
                     outcomes=report.outcomes(), cancelled=self.cancelled)
        d = self._release()
        d.addCallback(lambda _: report)
        d.chainDeferred(self.deferred)


class ConvergenceEngine(object):
    """
    Converges resource graphs, one scope at a time, with effects performed
    by ``dispatcher``.

    :param dispatcher: dispatcher performing state, lease, provider, retry
        and log intents
    :param clock: ``IReactorTime`` for lease renewal
    :param settings: :obj:`ConvergenceSettings`
    :param log: a bound log
    """

    def __init__(self, dispatcher, clock, settings=ConvergenceSettings(),
                 log=default_log):
        self.dispatcher = dispatcher
        self.clock = clock
        self.settings = settings
        self.log = log

    def converge(self, graph, scope, holder):
        """
        Start converging ``graph`` in ``scope`` as ``holder``.

        :return: the started :obj:`ConvergenceRun`
        """
        run = ConvergenceRun(self.dispatcher, self.clock, self.settings,
                             self.log, graph, scope, holder)
        run.start()
        return run


class ConvergenceService(MultiService, object):
    """
    A service that periodically builds the graph of the declarations in a
    :obj:`keel.graph.DeclarationRegistry` and converges it.
    """

    def __init__(self, engine, registry, scope, holder, interval,
                 log=default_log):
        MultiService.__init__(self)
        self.engine = engine
        self.registry = registry
        self.scope = scope
        self.holder = holder
        self.log = log.bind(keel_service='converger', scope=scope)
        self.current_run = None
        self.last_report = None
        timer = TimerService(interval, self.converge_once)
        timer.clock = engine.clock
        timer.setServiceParent(self)

    def converge_once(self):
        """
        Run one convergence if none is running. Errors are logged, never
        propagated, so that the timer keeps going.

        :return: Deferred that fires when the run is over
        """
        if self.current_run is not None:
            self.log.msg('converge-still-running')
            return succeed(None)
        try:
            graph = build_graph(self.registry.declarations())
        except BuildError as e:
            self.log.err(e, 'converge-build-failed', cycle=e.cycle)
            return succeed(None)

        run = self.engine.converge(graph, self.scope, self.holder)
        self.current_run = run

        def finished(report):
            self.last_report = report
            self.log.msg('converge-report', succeeded=report.succeeded,
                         table=report.as_table())

        def failed(failure):
            if not failure.check(LockHeldError):
                self.log.err(failure, 'converge-run-failed')

        def done(_):
            self.current_run = None

        d = run.deferred
        d.addCallbacks(finished, failed)
        return d.addBoth(done)

    def stopService(self):
        """
        Cancel the current run, if any, and stop once it has released its
        lease.
        """
        d = MultiService.stopService(self)
        if self.current_run is None:
            return d
        run = self.current_run
        run.cancel()
        return run.deferred.addBoth(lambda _: d)
