"""
Tests for :mod:`keel.composition`.
"""

from pyrsistent import freeze

from twisted.trial.unittest import SynchronousTestCase

from keel.autoscale.alarm import Alarm, Comparison, Statistic
from keel.autoscale.fleet import Fleet
from keel.autoscale.policy import AdjustmentType, ScalingPolicy
from keel.composition import (
    check_autoscale_references, fleet_metrics, get_autoscale_definitions,
    get_convergence_settings, json_to_alarm, json_to_declaration,
    json_to_fleet, json_to_policy)
from keel.convergence.model import ConvergenceSettings
from keel.graph import Reference


class JSONToDeclarationTests(SynchronousTestCase):
    """
    Tests for :func:`json_to_declaration`.
    """

    def test_minimal(self):
        """Attributes and dependencies are optional."""
        decl = json_to_declaration({'id': 'net', 'kind': 'network'})
        self.assertEqual((decl.node_id, decl.kind), ('net', 'network'))
        self.assertEqual(decl.attributes, freeze({}))
        self.assertEqual(list(decl.depends_on), [])

    def test_references_anywhere(self):
        """
        Objects of exactly ``ref`` and ``attribute`` become references,
        however deeply nested; other objects are left alone.
        """
        decl = json_to_declaration({
            'id': 'server', 'kind': 'server',
            'attributes': {
                'network': {'ref': 'net', 'attribute': 'id'},
                'nics': [{'subnet': {'ref': 'subnet', 'attribute': 'id'}}],
                'meta': {'ref': 'x', 'attribute': 'y', 'other': 1}},
            'depends_on': ['dns']})
        self.assertEqual(decl.attributes['network'], Reference('net', 'id'))
        self.assertEqual(decl.attributes['nics'][0]['subnet'],
                         Reference('subnet', 'id'))
        self.assertEqual(decl.attributes['meta'],
                         freeze({'ref': 'x', 'attribute': 'y', 'other': 1}))
        self.assertEqual(list(decl.depends_on), ['dns'])


class JSONToAutoscaleTests(SynchronousTestCase):
    """
    Tests for the fleet, alarm and policy conversions.
    """

    def test_fleet(self):
        """Desired capacity defaults to the minimum size."""
        self.assertEqual(
            json_to_fleet({'id': 'web', 'metric': 'cpu', 'min_size': 2,
                           'max_size': 4}),
            Fleet('web', 2, 4, 2))
        self.assertEqual(
            json_to_fleet({'id': 'web', 'metric': 'cpu', 'min_size': 2,
                           'max_size': 4, 'desired': 3}).desired,
            3)

    def test_alarm(self):
        """Comparison and statistic are converted to constants."""
        self.assertEqual(
            json_to_alarm({'name': 'low', 'threshold': 10,
                           'comparison': '<=', 'statistic': 'sample_count',
                           'periods': 3}),
            Alarm('low', 10, Comparison.LESS_OR_EQUAL, 3,
                  Statistic.SAMPLE_COUNT))
        self.assertEqual(
            json_to_alarm({'name': 'high', 'threshold': 70,
                           'comparison': '>='}),
            Alarm('high', 70))

    def test_policy(self):
        """The adjustment type defaults to a change in capacity."""
        self.assertEqual(
            json_to_policy({'id': 'up', 'fleet': 'web', 'alarm': 'high',
                            'adjustment': 1, 'cooldown': 300}),
            ScalingPolicy('up', 'web', 'high', 1, 300))
        self.assertEqual(
            json_to_policy({'id': 'up', 'fleet': 'web', 'alarm': 'high',
                            'adjustment': 5, 'cooldown': 300,
                            'adjustment_type': 'desired_capacity'})
            .adjustment_type,
            AdjustmentType.DESIRED_CAPACITY)

    def test_definitions(self):
        """
        All of the fleets, alarms and policies are converted, and the fleets'
        metrics are found.
        """
        config = {'autoscale': {
            'fleets': [{'id': 'web', 'metric': 'cpu', 'min_size': 1,
                        'max_size': 2}],
            'alarms': [{'name': 'high', 'threshold': 1, 'comparison': '>='}],
            'policies': [{'id': 'up', 'fleet': 'web', 'alarm': 'high',
                          'adjustment': 1, 'cooldown': 0}]}}
        fleets, alarms, policies = get_autoscale_definitions(config)
        self.assertEqual(fleets, [Fleet('web', 1, 2, 1)])
        self.assertEqual(alarms, [Alarm('high', 1)])
        self.assertEqual(policies, [ScalingPolicy('up', 'web', 'high', 1, 0)])
        self.assertEqual(fleet_metrics(config), {'web': 'cpu'})
        self.assertEqual(get_autoscale_definitions({}), ([], [], []))

    def test_check_references(self):
        """
        Policies naming fleets or alarms that are not configured are
        rejected.
        """
        fleets = [Fleet('web', 1, 2, 1)]
        alarms = [Alarm('high', 1)]
        check_autoscale_references(
            fleets, alarms, [ScalingPolicy('up', 'web', 'high', 1, 0)])
        self.assertRaises(
            ValueError, check_autoscale_references, fleets, alarms,
            [ScalingPolicy('up', 'db', 'high', 1, 0)])
        e = self.assertRaises(
            ValueError, check_autoscale_references, fleets, alarms,
            [ScalingPolicy('up', 'web', 'low', 1, 0)])
        self.assertIn("'low'", str(e))


class GetConvergenceSettingsTests(SynchronousTestCase):
    """
    Tests for :func:`get_convergence_settings`.
    """

    def test_defaults(self):
        """Nothing configured gives the default settings."""
        self.assertEqual(get_convergence_settings(lambda key: None),
                         ConvergenceSettings())

    def test_configured(self):
        """Configured values override the defaults."""
        config = {'convergence.parallelism': 2, 'convergence.backoff': 0.5,
                  'lease_duration': 30}
        self.assertEqual(
            get_convergence_settings(config.get),
            ConvergenceSettings(parallelism=2, backoff=0.5,
                                lease_duration=30))
