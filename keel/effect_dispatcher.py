"""Effect dispatchers for keel."""

from effect import ComposedDispatcher, TypeDispatcher, base_dispatcher

from txeffect import make_twisted_dispatcher

from keel.log.intents import get_log_dispatcher, get_msg_time_dispatcher
from keel.provider import get_provider_dispatcher
from keel.util.retry import Retry, perform_retry
from keel.zk import (
    get_zk_dispatcher, get_zk_lock_dispatcher, get_zk_state_dispatcher)


def get_simple_dispatcher(reactor):
    """
    Get an Effect dispatcher that can handle the generic effects keel uses:
    the base intents, retries, and Twisted's delays and parallel effects.
    """
    return ComposedDispatcher([
        base_dispatcher,
        TypeDispatcher({
            Retry: perform_retry,
        }),
        make_twisted_dispatcher(reactor),
    ])


def get_full_dispatcher(reactor, log, provider, call_timeout, state_store,
                        lock_manager):
    """
    Return a dispatcher that can perform all of keel's effects, with state
    and leases kept in memory.

    :param provider: :obj:`keel.provider.IResourceProvider`
    :param call_timeout: seconds a provider call may take
    :param state_store: :obj:`keel.state.InMemoryStateStore`
    :param lock_manager: :obj:`keel.lock.InMemoryLockManager`
    """
    return ComposedDispatcher([
        get_simple_dispatcher(reactor),
        get_log_dispatcher(log, {}),
        get_msg_time_dispatcher(reactor),
        get_provider_dispatcher(provider, reactor, call_timeout),
        state_store.get_dispatcher(),
        lock_manager.get_dispatcher(),
    ])


def get_zk_full_dispatcher(reactor, log, provider, call_timeout, kz_client):
    """
    Return a dispatcher that can perform all of keel's effects, with state
    and leases kept in ZooKeeper.

    :param kz_client: a started ``TxKazooClient``
    """
    return ComposedDispatcher([
        get_simple_dispatcher(reactor),
        get_log_dispatcher(log, {}),
        get_msg_time_dispatcher(reactor),
        get_provider_dispatcher(provider, reactor, call_timeout),
        get_zk_dispatcher(kz_client),
        get_zk_state_dispatcher(),
        get_zk_lock_dispatcher(reactor),
    ])
