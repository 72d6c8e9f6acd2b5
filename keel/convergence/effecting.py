"""
Code related to effecting the change a single resource needs: planning it
against its stored state, calling the provider and recording the result.
"""
import attr

from effect import Effect
from effect.do import do

from keel.convergence.model import NodeOutcome, NodeResult, PlanAction
from keel.convergence.planning import fingerprint, plan_node
from keel.graph import UnresolvedReference, resolve_references
from keel.log.intents import err, msg
from keel.provider import DeleteResource, TransientError, apply_resource
from keel.state import (
    ActualState, ConflictError, DeleteState, ReadState, WriteState,
    stored_version)
from keel.util.retry import (
    compose_retries, exponential_backoff_interval, retry_effect, retry_times,
    terminal_errors_except)


def error_reason(exc):
    """Short description of an exception, for a :obj:`NodeResult`."""
    return '{0}: {1}'.format(type(exc).__name__, exc)


def with_provider_retries(eff, settings):
    """
    Retry ``eff`` when it fails with :obj:`TransientError`, waiting
    ``settings.backoff`` seconds and then twice as long each time, until it
    has been tried ``settings.max_attempts`` times. Other errors are not
    retried.
    """
    return retry_effect(
        eff,
        compose_retries(terminal_errors_except(TransientError),
                        retry_times(settings.max_attempts - 1)),
        exponential_backoff_interval(settings.backoff))


@do
def converge_node(scope, node, outputs, settings):
    """
    Converge one declared resource whose dependencies have all succeeded.

    A version conflict when storing the new state means somebody else
    changed it; the state is re-read and the resource re-planned, at most
    ``settings.max_conflicts`` times.

    :param node: :obj:`keel.graph.ResourceNode`
    :param outputs: mapping of node id -> attributes of converged dependencies
    :param settings: :obj:`keel.convergence.model.ConvergenceSettings`

    :return: Effect of ``(NodeResult, attributes or None)``
    """
    try:
        resolved = resolve_references(node.attributes, outputs)
    except UnresolvedReference as e:
        yield msg('converge-node-blocked', reason=str(e))
        return NodeResult(NodeOutcome.BLOCKED, reasons=[str(e)]), None

    desired = attr.evolve(node, attributes=resolved)
    desired_fingerprint = fingerprint(node.kind, resolved)
    conflicts = 0
    while True:
        current = yield Effect(ReadState(scope, node.node_id))
        action = plan_node(desired_fingerprint, current)
        if action == PlanAction.NOOP:
            return NodeResult(NodeOutcome.NOOP, action), current.attributes

        yield msg('converge-node-apply', action=action)
        try:
            result = yield with_provider_retries(
                apply_resource(desired, action), settings)
        except Exception as e:
            yield err(e, 'converge-node-failed', action=action)
            return (NodeResult(NodeOutcome.FAILED, action,
                               [error_reason(e)]),
                    None)

        state = ActualState(attributes=result.attributes,
                            fingerprint=desired_fingerprint, kind=node.kind,
                            dependencies=node.dependencies)
        try:
            stored = yield Effect(WriteState(scope, node.node_id, state,
                                             stored_version(current)))
        except ConflictError as e:
            conflicts += 1
            if conflicts > settings.max_conflicts:
                yield err(e, 'converge-node-conflicts-exhausted',
                          conflicts=conflicts)
                return (NodeResult(NodeOutcome.FAILED, action,
                                   [error_reason(e)]),
                        None)
            yield msg('converge-node-conflict', conflicts=conflicts,
                      found_version=e.found_version)
            continue
        return NodeResult(NodeOutcome.APPLIED, action), stored.attributes


@do
def delete_orphan(scope, node_id, settings):
    """
    Delete a resource that has stored state but is no longer declared, then
    its stored state. Conflicts are handled as in :func:`converge_node`.

    :return: Effect of :obj:`NodeResult`
    """
    action = PlanAction.DELETE
    conflicts = 0
    while True:
        current = yield Effect(ReadState(scope, node_id))
        if current is None:
            return NodeResult(NodeOutcome.NOOP, action,
                              ['already deleted'])

        yield msg('converge-orphan-delete')
        try:
            yield with_provider_retries(
                Effect(DeleteResource(node_id=node_id, kind=current.kind,
                                      attributes=current.attributes)),
                settings)
        except Exception as e:
            yield err(e, 'converge-orphan-failed')
            return NodeResult(NodeOutcome.FAILED, action, [error_reason(e)])

        try:
            yield Effect(DeleteState(scope, node_id, current.version))
        except ConflictError as e:
            conflicts += 1
            if conflicts > settings.max_conflicts:
                yield err(e, 'converge-orphan-conflicts-exhausted',
                          conflicts=conflicts)
                return NodeResult(NodeOutcome.FAILED, action,
                                  [error_reason(e)])
            yield msg('converge-orphan-conflict', conflicts=conflicts,
                      found_version=e.found_version)
            continue
        return NodeResult(NodeOutcome.APPLIED, action)
