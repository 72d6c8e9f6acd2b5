"""Tests for :mod:`keel.graph`."""

from random import Random

from pyrsistent import pmap, pset, pvector

from twisted.trial.unittest import SynchronousTestCase

from keel.graph import (
    BuildError,
    DeclarationRegistry,
    Reference,
    UnresolvedReference,
    build_graph,
    find_references,
    resolve_references)
from keel.test.utils import decl


class FindReferencesTests(SynchronousTestCase):
    """Tests for :func:`find_references`."""

    def test_nested(self):
        """
        References are found inside nested maps and lists.
        """
        a = Reference('a', 'id')
        b = Reference('b', 'address')
        attrs = pmap({'x': 1, 'net': {'ids': [a, 'literal']}, 'y': b})
        self.assertEqual(set(find_references(attrs)), {a, b})

    def test_no_references(self):
        """No references means an empty list."""
        self.assertEqual(find_references(pmap({'x': [1, 2]})), [])


class ResolveReferencesTests(SynchronousTestCase):
    """Tests for :func:`resolve_references`."""

    def test_resolves(self):
        """
        Every reference is substituted with the referenced output, and the
        result is frozen.
        """
        attrs = pmap({'net': Reference('net', 'id'),
                      'list': [Reference('sg', 'id'), 3]})
        outputs = {'net': pmap({'id': 'n-1'}), 'sg': pmap({'id': 's-1'})}
        self.assertEqual(
            resolve_references(attrs, outputs),
            pmap({'net': 'n-1', 'list': pvector(['s-1', 3])}))

    def test_missing_node(self):
        """
        A reference to a node with no outputs raises
        :obj:`UnresolvedReference`.
        """
        ref = Reference('net', 'id')
        e = self.assertRaises(UnresolvedReference, resolve_references,
                              pmap({'net': ref}), {})
        self.assertEqual(e.reference, ref)

    def test_missing_attribute(self):
        """
        A reference to an attribute the node does not output raises
        :obj:`UnresolvedReference`.
        """
        self.assertRaises(UnresolvedReference, resolve_references,
                          pmap({'net': Reference('net', 'id')}),
                          {'net': pmap({'name': 'x'})})


class BuildGraphTests(SynchronousTestCase):
    """Tests for :func:`build_graph`."""

    def test_empty(self):
        """No declarations give an empty graph."""
        graph = build_graph([])
        self.assertEqual(graph.nodes, pmap())
        self.assertEqual(graph.order, pvector())

    def test_explicit_and_implicit_dependencies(self):
        """
        A node depends on what it names in ``depends_on`` followed by what
        its attributes refer to, each once.
        """
        graph = build_graph([
            decl('net'),
            decl('sg'),
            decl('server', depends_on=['sg'],
                 net=Reference('net', 'id'), sg=Reference('sg', 'id'))])
        self.assertEqual(graph.nodes['server'].dependencies,
                         pvector(['sg', 'net']))
        self.assertEqual(graph.nodes['net'].dependencies, pvector())

    def test_order_puts_dependencies_first(self):
        """
        Every node comes after its dependencies regardless of the order
        they were declared in, and ties keep declaration order.
        """
        graph = build_graph([
            decl('server', net=Reference('net', 'id')),
            decl('lb', depends_on=['server']),
            decl('dns'),
            decl('net')])
        self.assertEqual(graph.order,
                         pvector(['dns', 'net', 'server', 'lb']))

    def test_order_of_random_graphs(self):
        """
        For randomly generated acyclic declarations, declared in a random
        order, the order holds every node exactly once and every dependency
        comes before the nodes depending on it.
        """
        rand = Random(1234)
        for _ in range(50):
            ids = ['n{0}'.format(i) for i in range(rand.randint(1, 25))]
            declarations = []
            for i, node_id in enumerate(ids):
                earlier = ids[:i]
                explicit = rand.sample(earlier, rand.randint(0, len(earlier)))
                refs = dict(
                    ('ref{0}'.format(j), Reference(target, 'id'))
                    for j, target in enumerate(
                        rand.sample(earlier,
                                    rand.randint(0, min(3, len(earlier))))))
                declarations.append(decl(node_id, depends_on=explicit,
                                         **refs))
            rand.shuffle(declarations)
            graph = build_graph(declarations)
            self.assertEqual(sorted(graph.order), sorted(ids))
            position = dict((node_id, i)
                            for i, node_id in enumerate(graph.order))
            for node in graph.nodes.values():
                for dependency in node.dependencies:
                    self.assertLess(position[dependency],
                                    position[node.node_id])

    def test_transitive(self):
        """
        Nodes depending on each other only transitively are ordered, and
        :meth:`ResourceGraph.dependents` and :meth:`ResourceGraph.ancestors`
        follow the whole chain.
        """
        graph = build_graph([decl('c', depends_on=['b']),
                             decl('b', depends_on=['a']),
                             decl('a')])
        self.assertEqual(graph.order, pvector(['a', 'b', 'c']))
        self.assertEqual(graph.dependents('a'), pset(['b', 'c']))
        self.assertEqual(graph.ancestors('c'), pset(['a', 'b']))
        self.assertEqual(graph.dependents('c'), pset())

    def test_contains(self):
        """Membership is by node id."""
        graph = build_graph([decl('a')])
        self.assertIn('a', graph)
        self.assertNotIn('b', graph)

    def test_duplicate_ids(self):
        """Declaring an id twice is a :obj:`BuildError`."""
        e = self.assertRaises(BuildError, build_graph, [decl('a'), decl('a')])
        self.assertIn("'a'", str(e))
        self.assertIsNone(e.cycle)

    def test_undeclared_dependency(self):
        """
        Depending on, or referring to, an undeclared node is a
        :obj:`BuildError`.
        """
        self.assertRaises(BuildError, build_graph,
                          [decl('a', depends_on=['ghost'])])
        e = self.assertRaises(BuildError, build_graph,
                              [decl('a', x=Reference('ghost', 'id'))])
        self.assertIn('ghost', str(e))

    def test_self_reference_is_cycle(self):
        """A node referring to itself is a cycle of length one."""
        e = self.assertRaises(BuildError, build_graph,
                              [decl('a', x=Reference('a', 'id'))])
        self.assertEqual(e.cycle, ['a'])

    def test_cycle_names_every_member(self):
        """
        A cycle is reported with every node on it, in dependency order, and
        without the nodes that merely lead into it.
        """
        e = self.assertRaises(BuildError, build_graph, [
            decl('entry', depends_on=['a']),
            decl('a', depends_on=['b']),
            decl('b', depends_on=['c']),
            decl('c', x=Reference('a', 'id'))])
        self.assertEqual(set(e.cycle), {'a', 'b', 'c'})
        n = len(e.cycle)
        deps = {'a': 'b', 'b': 'c', 'c': 'a'}
        for i, node_id in enumerate(e.cycle):
            self.assertEqual(deps[node_id], e.cycle[(i + 1) % n])
        self.assertIn(' -> ', str(e))

    def test_cycle_is_shortest_through_back_edge(self):
        """
        When the back edge found closes a short cycle inside a longer path,
        only the short cycle is reported.
        """
        e = self.assertRaises(BuildError, build_graph, [
            decl('a', depends_on=['b']),
            decl('b', depends_on=['c']),
            decl('c', depends_on=['d']),
            decl('d', depends_on=['c'])])
        self.assertEqual(set(e.cycle), {'c', 'd'})


class DeclarationRegistryTests(SynchronousTestCase):
    """Tests for :obj:`DeclarationRegistry`."""

    def test_register_replace_deregister(self):
        """
        Declarations are kept in registration order, registering an id
        again replaces it and deregistering an unknown id is fine.
        """
        registry = DeclarationRegistry([decl('a'), decl('b')])
        registry.register(decl('a', kind='other'))
        registry.register(decl('c'))
        self.assertEqual([d.node_id for d in registry.declarations()],
                         ['a', 'b', 'c'])
        self.assertEqual(registry.declarations()[0].kind, 'other')
        registry.deregister('b')
        registry.deregister('ghost')
        self.assertEqual([d.node_id for d in registry.declarations()],
                         ['a', 'c'])
