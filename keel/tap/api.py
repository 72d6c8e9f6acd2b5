"""
Twisted Application plugin for keel nodes.
"""
import json
import socket

from jsonschema import ValidationError

from kazoo.client import KazooClient

from twisted.application.service import MultiService, Service
from twisted.internet import reactor
from twisted.python import usage
from twisted.python.reflect import namedAny
from twisted.python.threadpool import ThreadPool

from txkazoo import TxKazooClient
from txkazoo.log import TxLogger

from keel.autoscale.controller import AutoscalingController
from keel.composition import (
    check_autoscale_references, fleet_metrics, get_autoscale_definitions,
    get_convergence_settings, json_to_declaration)
from keel.convergence.service import ConvergenceEngine, ConvergenceService
from keel.effect_dispatcher import get_full_dispatcher, get_zk_full_dispatcher
from keel.graph import DeclarationRegistry
from keel.json_schema import config_schemas, validate
from keel.lock import InMemoryLockManager
from keel.log import log
from keel.state import InMemoryStateStore
from keel.util.config import config_value, set_config_data


class Options(usage.Options):
    """
    Options for a keel node.
    """

    optParameters = [
        ["config", "c", "config.json",
         "path to JSON configuration file."]
    ]

    def postOptions(self):
        """
        Merge our commandline arguments with our config file, which must be
        valid as per :obj:`config_schemas.config`.
        """
        with open(self['config']) as f:
            config = json.load(f)
        try:
            validate(config, config_schemas.config)
        except ValidationError as e:
            raise usage.UsageError(
                "Invalid configuration {0}: {1}".format(self['config'],
                                                        e.message))
        self.update(config)


class FunctionalService(Service, object):
    """
    A simple service that has functions to call when starting and
    stopping service.
    """

    def __init__(self, start=None, stop=None):
        """
        :param start: A no-argument callable to be called when service
            is started
        :param stop: A no-argument callable to be called when service
            is stopped
        """
        self._start = start
        self._stop = stop

    def startService(self):
        """
        Start the service by calling stored function
        """
        Service.startService(self)
        if self._start:
            return self._start()

    def stopService(self):
        """
        Stop the service by calling stored function
        """
        Service.stopService(self)
        if self._stop:
            return self._stop()


def makeService(config):
    """
    Set up the keel service: convergence of the configured resources and one
    autoscaling controller per configured fleet.
    """
    config = dict(config)
    set_config_data(config)

    parent = MultiService()

    provider = namedAny(config_value('provider'))(
        reactor, config_value('provider_config') or {})
    call_timeout = config_value('convergence.call_timeout') or 60
    registry = DeclarationRegistry(
        json_to_declaration(r) for r in config_value('resources') or [])

    def setup(dispatcher):
        setup_converger(parent, dispatcher, registry)
        setup_autoscale(parent, dispatcher, config, registry)

    if config_value('zookeeper'):
        threads = config_value('zookeeper.threads') or 10
        disable_logs = config_value('zookeeper.no_logs')
        threadpool = ThreadPool(maxthreads=threads)
        sync_kz_client = KazooClient(
            hosts=config_value('zookeeper.hosts'),
            # Keep trying to connect until the end of time with
            # max interval of 10 minutes
            connection_retry=dict(max_tries=-1, max_delay=600),
            logger=None if disable_logs else TxLogger(log.bind(system='kazoo'))
        )
        kz_client = TxKazooClient(reactor, threadpool, sync_kz_client)
        # Don't timeout. Keep trying to connect forever
        d = kz_client.start(timeout=None)

        def on_client_ready(_):
            setup(get_zk_full_dispatcher(reactor, log, provider, call_timeout,
                                         kz_client))
            parent.addService(FunctionalService(stop=kz_client.stop))

        d.addCallback(on_client_ready)
        d.addErrback(log.err, 'Could not start TxKazooClient')
    else:
        setup(get_full_dispatcher(reactor, log, provider, call_timeout,
                                  InMemoryStateStore(),
                                  InMemoryLockManager(reactor)))

    return parent


def setup_converger(parent, dispatcher, registry, clock=reactor):
    """
    Create the :obj:`ConvergenceService` converging the declarations in
    ``registry`` and add it to ``parent``.
    """
    engine = ConvergenceEngine(dispatcher, clock,
                               get_convergence_settings(config_value), log)
    converger = ConvergenceService(
        engine, registry, config_value('scope'),
        config_value('holder') or socket.gethostname(),
        config_value('interval') or 60, log)
    converger.setServiceParent(parent)
    return converger


def setup_autoscale(parent, dispatcher, config, registry, clock=reactor):
    """
    Create an :obj:`AutoscalingController` for every configured fleet and add
    them to ``parent``.

    :return: ``list`` of the controllers
    """
    fleets, alarms, policies = get_autoscale_definitions(config)
    check_autoscale_references(fleets, alarms, policies)
    metrics = fleet_metrics(config)
    controllers = []
    for fleet in fleets:
        bound = set(p.alarm for p in policies if p.fleet_id == fleet.fleet_id)
        controller = AutoscalingController(
            dispatcher, clock, fleet, metrics[fleet.fleet_id],
            [a for a in alarms if a.name in bound], policies,
            period=config_value('autoscale.period') or 60,
            grace_period=config_value('autoscale.grace_period') or 300,
            restart_delay=config_value('autoscale.restart_delay') or 5,
            registry=registry, log=log)
        controller.setServiceParent(parent)
        controllers.append(controller)
    return controllers
