"""
Building the dependency graph of declared resources.

A resource depends on another either explicitly, by naming it in
``depends_on``, or implicitly, by using a :obj:`Reference` to one of its
output attributes anywhere in its own attributes. The result of
:func:`build_graph` is a :obj:`ResourceGraph`, which is guaranteed acyclic.
"""
from collections import deque

import attr

from pyrsistent import PMap, PVector, freeze, pmap, pset, pvector, thaw

from toolz.itertoolz import unique


@attr.s(frozen=True)
class Reference(object):
    """
    A reference to an output attribute of another resource.

    :ivar str node_id: the referenced resource
    :ivar str attribute: name of the attribute in the referenced resource's
        provider-reported attributes
    """
    node_id = attr.ib()
    attribute = attr.ib()


@attr.s(frozen=True)
class ResourceDeclaration(object):
    """
    The declared, desired form of a resource, before graph building.

    :ivar str node_id: unique id of the resource
    :ivar str kind: resource kind, interpreted by the provider
    :ivar attributes: desired attributes, possibly containing
        :obj:`Reference` values
    :ivar depends_on: ids of resources this one explicitly depends on
    """
    node_id = attr.ib()
    kind = attr.ib()
    attributes = attr.ib(default=pmap(), converter=freeze)
    depends_on = attr.ib(default=pvector(), converter=pvector)


@attr.s(frozen=True)
class ResourceNode(object):
    """
    A resource in a built graph.

    :ivar PVector dependencies: explicit dependencies followed by implicit
        ones, each listed once
    """
    node_id = attr.ib()
    kind = attr.ib()
    attributes = attr.ib(validator=attr.validators.instance_of(PMap))
    dependencies = attr.ib(validator=attr.validators.instance_of(PVector))


class BuildError(Exception):
    """
    Raised when declarations cannot be turned into an acyclic graph.

    :ivar cycle: ids of every node in the offending cycle, in dependency
        order, or ``None`` if the declarations are malformed in another way
    """
    def __init__(self, message, cycle=None):
        super(BuildError, self).__init__(message)
        self.cycle = cycle


class UnresolvedReference(Exception):
    """
    Raised when a :obj:`Reference` cannot be substituted because the
    referenced resource has no such output (yet).
    """
    def __init__(self, reference):
        super(UnresolvedReference, self).__init__(
            "Unresolved reference to attribute {0!r} of {1!r}".format(
                reference.attribute, reference.node_id))
        self.reference = reference


def find_references(value):
    """
    Find all :obj:`Reference` values nested anywhere in ``value``.

    :return: list of references in the order they are encountered
    """
    if isinstance(value, Reference):
        return [value]
    if isinstance(value, PMap) or isinstance(value, dict):
        return [ref for k in sorted(value, key=repr)
                for ref in find_references(value[k])]
    if isinstance(value, (list, tuple, PVector)):
        return [ref for item in value for ref in find_references(item)]
    return []


def resolve_references(attributes, outputs):
    """
    Substitute every :obj:`Reference` in ``attributes`` with the referenced
    output.

    :param attributes: attribute structure, usually a PMap
    :param outputs: mapping of node id to that node's output attributes

    :return: the attributes with references replaced, frozen
    :raise: :obj:`UnresolvedReference` if an output is not available
    """
    def resolve(value):
        if isinstance(value, Reference):
            node_outputs = outputs.get(value.node_id)
            if node_outputs is None or value.attribute not in node_outputs:
                raise UnresolvedReference(value)
            return node_outputs[value.attribute]
        if isinstance(value, PMap) or isinstance(value, dict):
            return dict((k, resolve(v)) for k, v in value.items())
        if isinstance(value, (list, tuple, PVector)):
            return [resolve(item) for item in value]
        return value

    return freeze(resolve(thaw(attributes)))


@attr.s(frozen=True)
class ResourceGraph(object):
    """
    An acyclic graph of resources.

    :ivar PMap nodes: node id -> :obj:`ResourceNode`
    :ivar PVector order: node ids in topological order, every dependency
        before its dependents
    """
    nodes = attr.ib()
    order = attr.ib()

    def dependents(self, node_id):
        """
        Get the ids of all nodes that depend on ``node_id``, directly or
        transitively.
        """
        reverse = _reverse_edges(self.nodes)
        return _reachable(node_id, lambda n: reverse[n])

    def ancestors(self, node_id):
        """
        Get the ids of all nodes ``node_id`` depends on, directly or
        transitively.
        """
        return _reachable(node_id, lambda n: self.nodes[n].dependencies)

    def __contains__(self, node_id):
        return node_id in self.nodes


def _reverse_edges(nodes):
    reverse = dict((node_id, []) for node_id in nodes)
    for node in nodes.values():
        for dep in node.dependencies:
            reverse[dep].append(node.node_id)
    return reverse


def _reachable(start, neighbours):
    seen = set()
    stack = list(neighbours(start))
    while stack:
        current = stack.pop()
        if current not in seen:
            seen.add(current)
            stack.extend(neighbours(current))
    return pset(seen)


WHITE, GREY, BLACK = range(3)


def _shortest_cycle_through(nodes, source, target):
    """
    Find the shortest path ``target -> ... -> source`` along dependency edges,
    which together with the edge ``source -> target`` forms the smallest
    cycle containing that edge.
    """
    previous = {target: None}
    queue = deque([target])
    while queue:
        current = queue.popleft()
        if current == source:
            break
        for dep in nodes[current].dependencies:
            if dep not in previous:
                previous[dep] = current
                queue.append(dep)
    path = []
    current = source
    while current is not None:
        path.append(current)
        current = previous[current]
    # path is source <- ... <- target; the cycle in edge order starts at
    # source and follows dependency edges back to it
    path.reverse()
    return [source] + path[:-1]


def find_cycle(nodes, declaration_order):
    """
    Find a cycle in the dependency edges of ``nodes`` using depth-first
    traversal with white/grey/black colouring.

    :return: list of node ids forming a minimal cycle through the first back
        edge found, each one depending on the next and the last depending on
        the first; or ``None`` if the graph is acyclic
    """
    colour = dict((node_id, WHITE) for node_id in nodes)

    for root in declaration_order:
        if colour[root] != WHITE:
            continue
        colour[root] = GREY
        stack = [(root, iter(nodes[root].dependencies))]
        while stack:
            current, deps = stack[-1]
            for dep in deps:
                if colour[dep] == GREY:
                    return _shortest_cycle_through(nodes, current, dep)
                if colour[dep] == WHITE:
                    colour[dep] = GREY
                    stack.append((dep, iter(nodes[dep].dependencies)))
                    break
            else:
                colour[current] = BLACK
                stack.pop()
    return None


def topological_order(nodes, declaration_order):
    """
    Order node ids so that every node comes after all of its dependencies.
    Ties are broken by declaration order so the result is deterministic.
    """
    position = dict((node_id, i) for i, node_id in
                    enumerate(declaration_order))
    reverse = _reverse_edges(nodes)
    remaining = dict((node_id, len(node.dependencies))
                     for node_id, node in nodes.items())
    ready = sorted((n for n, count in remaining.items() if count == 0),
                   key=position.get)
    order = []
    while ready:
        current = ready.pop(0)
        order.append(current)
        released = []
        for dependent in reverse[current]:
            remaining[dependent] -= 1
            if remaining[dependent] == 0:
                released.append(dependent)
        ready = sorted(ready + released, key=position.get)
    return pvector(order)


def build_graph(declarations):
    """
    Build a :obj:`ResourceGraph` from resource declarations.

    :param declarations: iterable of :obj:`ResourceDeclaration`
    :return: :obj:`ResourceGraph`
    :raise: :obj:`BuildError` if two declarations share an id, a dependency
        or reference names an undeclared resource, or the dependencies form a
        cycle. Nothing is built in that case.
    """
    declarations = list(declarations)
    declared = set()
    for decl in declarations:
        if decl.node_id in declared:
            raise BuildError(
                "Resource {0!r} is declared more than once".format(
                    decl.node_id))
        declared.add(decl.node_id)

    nodes = {}
    for decl in declarations:
        implicit = [ref.node_id for ref in find_references(decl.attributes)]
        dependencies = list(unique(list(decl.depends_on) + implicit))
        missing = [dep for dep in dependencies if dep not in declared]
        if missing:
            raise BuildError(
                "Resource {0!r} depends on undeclared resources: {1}".format(
                    decl.node_id, ", ".join(sorted(missing))))
        nodes[decl.node_id] = ResourceNode(
            node_id=decl.node_id, kind=decl.kind,
            attributes=decl.attributes, dependencies=pvector(dependencies))

    declaration_order = [decl.node_id for decl in declarations]
    cycle = find_cycle(nodes, declaration_order)
    if cycle is not None:
        raise BuildError(
            "Dependency cycle between resources: {0}".format(
                " -> ".join(cycle + [cycle[0]])),
            cycle=cycle)

    return ResourceGraph(nodes=pmap(nodes),
                         order=topological_order(nodes, declaration_order))


class DeclarationRegistry(object):
    """
    A mutable collection of declarations that components outside of the
    declaration source, such as the autoscaling controller, contribute to.
    """
    def __init__(self, declarations=()):
        self._declarations = {}
        for decl in declarations:
            self.register(decl)

    def register(self, declaration):
        """
        Add or replace the declaration with the same node id.
        """
        self._declarations[declaration.node_id] = declaration

    def deregister(self, node_id):
        """
        Remove the declaration of ``node_id`` if it is registered.
        """
        self._declarations.pop(node_id, None)

    def declarations(self):
        """
        :return: list of registered declarations in registration order
        """
        return list(self._declarations.values())
