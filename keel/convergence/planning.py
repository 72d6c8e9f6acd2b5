"""Code related to deciding what has to change for resources to converge."""

import hashlib
import json

from pyrsistent import pmap, pset, thaw

from keel.convergence.model import PlanAction
from keel.graph import UnresolvedReference, resolve_references


def fingerprint(kind, attributes):
    """
    Hash a resource's kind and desired attributes, with every reference
    already resolved. Equal declarations always hash equally regardless of
    the order their keys were given in.

    :return: hex digest ``str``
    """
    canonical = json.dumps({'kind': kind, 'attributes': thaw(attributes)},
                           sort_keys=True, separators=(',', ':'),
                           default=repr)
    return hashlib.sha256(canonical.encode('utf-8')).hexdigest()


def plan_node(desired_fingerprint, current):
    """
    Decide what to do with a declared resource.

    :param desired_fingerprint: :func:`fingerprint` of the declaration
    :param current: stored :obj:`keel.state.ActualState`, or ``None``

    :return: :obj:`PlanAction` CREATE, UPDATE or NOOP
    """
    if current is None:
        return PlanAction.CREATE
    if current.fingerprint != desired_fingerprint:
        return PlanAction.UPDATE
    return PlanAction.NOOP


def find_orphans(graph, states):
    """
    Find resources with stored state that are no longer declared.

    :param graph: :obj:`keel.graph.ResourceGraph`
    :param states: mapping of node id to :obj:`keel.state.ActualState`
    :return: ``list`` of node ids, sorted
    """
    return sorted(node_id for node_id in states if node_id not in graph)


def deletion_blockers(graph, states):
    """
    Work out what every orphan has to wait for before it may be deleted:
    each resource whose stored state says it depends on the orphan, whether
    that resource is still declared or is an orphan too. Deleting in this
    order is the reverse of the order the resources were created in.

    :return: PMap of orphan id -> PSet of node ids
    """
    orphans = find_orphans(graph, states)
    blockers = dict((orphan, set()) for orphan in orphans)
    for node_id, state in states.items():
        for dep in state.dependencies:
            if dep in blockers and dep != node_id:
                blockers[dep].add(node_id)
    return pmap((orphan, pset(waiting))
                for orphan, waiting in blockers.items())


def plan_convergence(graph, states):
    """
    Compute the :obj:`PlanAction` of every resource without changing
    anything. References are resolved against the stored attributes of the
    referenced resources; a reference that cannot be resolved that way means
    the resource will change once its dependency is applied.

    :param graph: :obj:`keel.graph.ResourceGraph`
    :param states: mapping of node id to :obj:`keel.state.ActualState`
    :return: ConvergencePlan, a PMap of node id -> :obj:`PlanAction`
    """
    outputs = dict((node_id, state.attributes)
                   for node_id, state in states.items())
    plan = {}
    for node_id in graph.order:
        node = graph.nodes[node_id]
        current = states.get(node_id)
        try:
            resolved = resolve_references(node.attributes, outputs)
        except UnresolvedReference:
            plan[node_id] = (PlanAction.CREATE if current is None
                             else PlanAction.UPDATE)
        else:
            plan[node_id] = plan_node(fingerprint(node.kind, resolved),
                                      current)
    for orphan in find_orphans(graph, states):
        plan[orphan] = PlanAction.DELETE
    return pmap(plan)
