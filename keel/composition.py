"""
Code for turning the JSON configuration into keel's model objects.

Everything here expects JSON that has already been validated against
:obj:`keel.json_schema.config_schemas.config`.
"""
from toolz.dicttoolz import get_in

from keel.autoscale.alarm import Alarm, Comparison, Statistic
from keel.autoscale.fleet import Fleet
from keel.autoscale.policy import AdjustmentType, ScalingPolicy
from keel.convergence.model import ConvergenceSettings
from keel.graph import Reference, ResourceDeclaration


COMPARISONS = {'>=': Comparison.GREATER_OR_EQUAL,
               '<=': Comparison.LESS_OR_EQUAL}


def _is_reference(value):
    return isinstance(value, dict) and set(value) == {'ref', 'attribute'}


def json_to_attributes(value):
    """
    Convert declared attributes, turning every ``{"ref": ..., "attribute":
    ...}`` object found anywhere in them into a :obj:`Reference`.
    """
    if _is_reference(value):
        return Reference(node_id=value['ref'], attribute=value['attribute'])
    if isinstance(value, dict):
        return dict((k, json_to_attributes(v)) for k, v in value.items())
    if isinstance(value, list):
        return [json_to_attributes(v) for v in value]
    return value


def json_to_declaration(resource):
    """
    Create a :obj:`ResourceDeclaration` from its JSON form, as per
    :obj:`keel.json_schema.config_schemas.resource`.
    """
    return ResourceDeclaration(
        node_id=resource['id'], kind=resource['kind'],
        attributes=json_to_attributes(resource.get('attributes', {})),
        depends_on=resource.get('depends_on', []))


def json_to_fleet(fleet):
    """
    Create a :obj:`Fleet` from its JSON form, as per
    :obj:`keel.json_schema.config_schemas.fleet`.
    """
    return Fleet(fleet_id=fleet['id'], min_size=fleet['min_size'],
                 max_size=fleet['max_size'],
                 desired=fleet.get('desired', fleet['min_size']))


def json_to_alarm(alarm):
    """
    Create an :obj:`Alarm` from its JSON form, as per
    :obj:`keel.json_schema.config_schemas.alarm`.
    """
    return Alarm(
        name=alarm['name'], threshold=alarm['threshold'],
        comparison=COMPARISONS[alarm['comparison']],
        periods=alarm.get('periods', 1),
        statistic=Statistic.lookupByName(
            alarm.get('statistic', 'average').upper()))


def json_to_policy(policy):
    """
    Create a :obj:`ScalingPolicy` from its JSON form, as per
    :obj:`keel.json_schema.config_schemas.policy`.
    """
    return ScalingPolicy(
        policy_id=policy['id'], fleet_id=policy['fleet'],
        alarm=policy['alarm'], adjustment=policy['adjustment'],
        cooldown=policy['cooldown'],
        adjustment_type=AdjustmentType.lookupByName(
            policy.get('adjustment_type', 'change').upper()))


def get_convergence_settings(get_config_value):
    """
    Read :obj:`ConvergenceSettings` from the configuration, using the
    defaults of anything not configured.

    :param callable get_config_value: config key -> config value.
    """
    keys = {'parallelism': 'convergence.parallelism',
            'max_attempts': 'convergence.max_attempts',
            'backoff': 'convergence.backoff',
            'max_conflicts': 'convergence.max_conflicts',
            'lease_duration': 'lease_duration'}
    settings = {}
    for name, key in keys.items():
        value = get_config_value(key)
        if value is not None:
            settings[name] = value
    return ConvergenceSettings(**settings)


def get_autoscale_definitions(config):
    """
    Get the fleets, alarms and policies of the ``autoscale`` configuration.

    :return: ``(fleets, alarms, policies)``, lists of :obj:`Fleet`,
        :obj:`Alarm` and :obj:`ScalingPolicy`
    """
    return ([json_to_fleet(f)
             for f in get_in(['autoscale', 'fleets'], config, [])],
            [json_to_alarm(a)
             for a in get_in(['autoscale', 'alarms'], config, [])],
            [json_to_policy(p)
             for p in get_in(['autoscale', 'policies'], config, [])])


def fleet_metrics(config):
    """
    :return: ``dict`` of fleet id -> name of the metric it scales on
    """
    return dict((f['id'], f['metric'])
                for f in get_in(['autoscale', 'fleets'], config, []))


def check_autoscale_references(fleets, alarms, policies):
    """
    Check that every policy names a configured fleet and alarm.

    :raise: ``ValueError`` naming the first policy that does not
    """
    fleet_ids = set(f.fleet_id for f in fleets)
    alarm_names = set(a.name for a in alarms)
    for policy in policies:
        if policy.fleet_id not in fleet_ids:
            raise ValueError("Policy {0!r} refers to unknown fleet {1!r}"
                             .format(policy.policy_id, policy.fleet_id))
        if policy.alarm not in alarm_names:
            raise ValueError("Policy {0!r} refers to unknown alarm {1!r}"
                             .format(policy.policy_id, policy.alarm))
