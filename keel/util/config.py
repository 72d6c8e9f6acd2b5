"""
Global configuration, loaded once from the JSON file handed to the twistd
plugin and looked up with dotted paths.
"""
from toolz.dicttoolz import get_in

_config_data = {}


def set_config_data(data):
    """
    Set the global configuration data.

    :param dict data: The configuration data, probably loaded from some JSON.
    """
    global _config_data
    _config_data = data


def config_value(name, default=None):
    """
    :param str name: Name is a . separated path to a configuration value
        stored in a nested dictionary.
    :param default: returned when the path is not configured

    :returns: The value specified in the configuration file, or ``default``.
    """
    return get_in(name.split('.'), _config_data, default)
