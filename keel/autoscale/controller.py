"""
The autoscaling controller: a service that watches a fleet's load metric and
scales the fleet with its policies.
"""
from effect import Effect
from effect.do import do

from pyrsistent import pmap

from twisted.application.internet import TimerService
from twisted.application.service import MultiService
from twisted.internet.defer import CancelledError, inlineCallbacks, succeed

from txeffect import perform

from keel.autoscale.alarm import (
    AlarmState, aggregate, evaluate_alarm, transitioned_to_alarm)
from keel.autoscale.fleet import (
    check_health, fleet_declaration, fleet_node_id, reconcile_capacity,
    routable_instances)
from keel.autoscale.policy import PolicyState, execute_policy
from keel.log import log as default_log
from keel.log.intents import err, msg, with_log
from keel.provider import StreamMetric


@do
def evaluate_period(alarms, alarm_states, policies, policy_states, fleet,
                    samples, now, grace_period):
    """
    Everything the controller does at the end of an evaluation period:
    evaluate the alarms with the period's samples, fire the policies of the
    alarms that went into ALARM, check instance health and reconcile the
    fleet's capacity.

    A policy that fails to execute is logged and does not stop the rest.

    :param alarms: mapping of alarm name -> :obj:`Alarm`
    :param alarm_states: mapping of alarm name -> :obj:`AlarmState`
    :param policies: :obj:`ScalingPolicy` instances, in firing order
    :param policy_states: mapping of policy id -> :obj:`PolicyState`
    :param samples: the :obj:`MetricSample` instances of the period

    :return: Effect of ``(alarm_states, policy_states, fleet)``
    """
    new_alarm_states = {}
    fired = set()
    for name in sorted(alarms):
        alarm = alarms[name]
        previous = alarm_states.get(name, AlarmState())
        value = aggregate(alarm.statistic, samples)
        state = evaluate_alarm(alarm, previous, value)
        if state.status != previous.status:
            yield msg('alarm-status-changed', alarm=name, value=value,
                      previous_status=previous.status, status=state.status,
                      consecutive_breaching=state.consecutive_breaching,
                      consecutive_ok=state.consecutive_ok)
        if transitioned_to_alarm(previous, state):
            fired.add(name)
        new_alarm_states[name] = state

    new_policy_states = dict(policy_states)
    for policy in policies:
        if policy.alarm not in fired:
            continue
        previous = new_policy_states.get(policy.policy_id, PolicyState())
        try:
            fleet, new_policy_states[policy.policy_id] = yield execute_policy(
                policy, previous, fleet, now)
        except Exception as e:
            yield err(e, 'policy-execute-failed', policy_id=policy.policy_id)

    fleet = yield check_health(fleet, now, grace_period)
    fleet = yield reconcile_capacity(fleet, now)
    return pmap(new_alarm_states), pmap(new_policy_states), fleet


class AutoscalingController(MultiService, object):
    """
    Scales one fleet.

    Samples from the provider's metric stream are collected as they arrive.
    Every ``period`` seconds the collected samples are handed to
    :func:`evaluate_period`. If the stream fails or ends it is requested
    again after ``restart_delay`` seconds.

    :ivar alarm_states: PMap of alarm name -> :obj:`AlarmState`
    :ivar policy_states: PMap of policy id -> :obj:`PolicyState`
    :ivar fleet: the :obj:`Fleet` as last evaluated
    """

    def __init__(self, dispatcher, clock, fleet, metric_name, alarms,
                 policies, period, grace_period=60, restart_delay=5,
                 registry=None, log=default_log):
        """
        :param dispatcher: dispatcher performing provider and log intents
        :param clock: ``IReactorTime``
        :param registry: :obj:`keel.graph.DeclarationRegistry` the fleet's
            declaration is registered in while the service runs, or ``None``
        """
        MultiService.__init__(self)
        self.dispatcher = dispatcher
        self.clock = clock
        self.fleet = fleet
        self.metric_name = metric_name
        self.alarms = pmap((alarm.name, alarm) for alarm in alarms)
        self.policies = [p for p in policies if p.fleet_id == fleet.fleet_id]
        self.grace_period = grace_period
        self.restart_delay = restart_delay
        self.registry = registry
        self.log = log.bind(keel_service='autoscale', fleet_id=fleet.fleet_id)

        self.alarm_states = pmap((name, AlarmState()) for name in self.alarms)
        self.policy_states = pmap((p.policy_id, PolicyState())
                                  for p in self.policies)
        self.samples = []

        self._evaluating = False
        self._consuming = False
        self._next_sample = None
        self._restart = None
        timer = TimerService(period, self.evaluate)
        timer.clock = clock
        timer.setServiceParent(self)

    def routable_instances(self):
        """See :func:`keel.autoscale.fleet.routable_instances`."""
        return routable_instances(self.fleet)

    def startService(self):
        """
        Register the fleet's declaration and start consuming metrics.
        """
        if self.registry is not None:
            self.registry.register(fleet_declaration(self.fleet))
        self._consuming = True
        self._consume()
        MultiService.startService(self)

    def stopService(self):
        """
        Stop consuming metrics and deregister the fleet's declaration.
        """
        self._consuming = False
        if self._restart is not None and self._restart.active():
            self._restart.cancel()
        if self._next_sample is not None:
            self._next_sample.cancel()
        if self.registry is not None:
            self.registry.deregister(fleet_node_id(self.fleet.fleet_id))
        return MultiService.stopService(self)

    @inlineCallbacks
    def _consume(self):
        self._restart = None
        try:
            stream = yield perform(
                self.dispatcher,
                Effect(StreamMetric(fleet_id=self.fleet.fleet_id,
                                    metric_name=self.metric_name)))
            for d in stream:
                self._next_sample = d
                sample = yield d
                self._next_sample = None
                if not self._consuming:
                    return
                self.samples.append(sample)
            self.log.msg('metric-stream-ended', metric=self.metric_name)
        except CancelledError:
            if not self._consuming:
                return
            self.log.msg('metric-stream-cancelled', metric=self.metric_name)
        except Exception:
            self.log.err(None, 'metric-stream-failed', metric=self.metric_name)
        self._next_sample = None
        if self._consuming:
            self._restart = self.clock.callLater(self.restart_delay,
                                                 self._consume)

    def evaluate(self):
        """
        Evaluate the samples collected since the last evaluation. Skipped if
        the previous evaluation is still going.

        :return: Deferred that fires when the evaluation is done; it never
            fails, so that the timer keeps going
        """
        if self._evaluating:
            self.log.msg('autoscale-evaluation-still-running')
            return succeed(None)
        self._evaluating = True
        samples, self.samples = self.samples, []
        now = self.clock.seconds()
        eff = evaluate_period(self.alarms, self.alarm_states, self.policies,
                              self.policy_states, self.fleet, samples, now,
                              self.grace_period)
        d = perform(self.dispatcher,
                    with_log(eff, keel_service='autoscale',
                             fleet_id=self.fleet.fleet_id))

        def evaluated(result):
            self.alarm_states, self.policy_states, self.fleet = result

        def done(_):
            self._evaluating = False

        d.addCallbacks(evaluated, self.log.err,
                       errbackArgs=('autoscale-evaluation-failed',))
        return d.addBoth(done)
