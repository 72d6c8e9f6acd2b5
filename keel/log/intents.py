"""
Logging as effects.

Effectful code logs by yielding :func:`msg` and :func:`err` effects. Fields
bound with :func:`with_log` are added to every message logged while the
wrapped effect is performed, innermost binding winning.
"""

from functools import partial

import attr

from effect import (
    ComposedDispatcher, Effect, TypeDispatcher, perform, sync_performer)

from toolz.dicttoolz import merge

from twisted.python.failure import Failure


@attr.s
class Log(object):
    """
    Intent to log message
    """
    msg = attr.ib()
    fields = attr.ib()


@attr.s(init=False)
class LogErr(object):
    """
    Intent to log error. ``failure`` may be a :obj:`Failure`, an exception,
    or ``None`` for the exception currently being handled.
    """
    failure = attr.ib()
    msg = attr.ib()
    fields = attr.ib()

    def __init__(self, failure, msg, fields):
        # The exception context is gone by the time the intent is performed
        if failure is None:
            failure = Failure()
        elif isinstance(failure, BaseException):
            failure = Failure(failure)
        self.failure = failure
        self.msg = msg
        self.fields = fields


@attr.s
class BoundFields(object):
    """
    Intent to perform ``effect`` with ``fields`` added to everything it logs.
    """
    effect = attr.ib()
    fields = attr.ib()


def with_log(effect, **fields):
    """Return Effect of :obj:`BoundFields`."""
    return Effect(BoundFields(effect, fields))


def msg(msg, **fields):
    """Return Effect of :obj:`Log`."""
    return Effect(Log(msg, fields))


def err(failure, msg, **fields):
    """Return Effect of :obj:`LogErr`."""
    return Effect(LogErr(failure, msg, fields))


def get_log_dispatcher(log, fields):
    """
    Get a dispatcher logging to ``log`` with ``fields`` added to every
    message.

    :param log: a :obj:`keel.log.bound.BoundLog`
    :param dict fields: fields bound by the enclosing :obj:`BoundFields`
    """
    @sync_performer
    def perform_msg(dispatcher, intent):
        log.msg(intent.msg, **merge(fields, intent.fields))

    @sync_performer
    def perform_err(dispatcher, intent):
        log.err(intent.failure, intent.msg, **merge(fields, intent.fields))

    def perform_bound(dispatcher, intent, box):
        inner = ComposedDispatcher([
            get_log_dispatcher(log, merge(fields, intent.fields)),
            dispatcher])
        perform(inner, intent.effect.on(box.succeed, box.fail))

    return TypeDispatcher({
        Log: perform_msg,
        LogErr: perform_err,
        BoundFields: perform_bound,
    })


@attr.s
class MsgWithTime(object):
    """
    Intent to perform ``effect`` and then log ``msg`` with the seconds it
    took as ``seconds_taken``.
    """
    msg = attr.ib()
    effect = attr.ib()


def msg_with_time(msg, eff):
    """Return Effect of :obj:`MsgWithTime`."""
    return Effect(MsgWithTime(msg, eff))


@sync_performer
def perform_msg_time(clock, dispatcher, intent):
    """Perform :obj:`MsgWithTime`, timing with ``clock``."""
    start = clock.seconds()

    def log_time(result):
        return msg(intent.msg,
                   seconds_taken=clock.seconds() - start).on(lambda _: result)

    return intent.effect.on(log_time)


def get_msg_time_dispatcher(clock):
    """Get a dispatcher performing :obj:`MsgWithTime`."""
    return TypeDispatcher({MsgWithTime: partial(perform_msg_time, clock)})
