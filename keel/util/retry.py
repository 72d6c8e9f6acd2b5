"""
Retrying effects with a delay between attempts.

``can_retry`` callables take a :class:`Failure` and return whether another
attempt should be made; ``next_interval`` callables take the same
:class:`Failure` and return the number of seconds to wait before it.
"""

import attr

from effect import Delay, Effect, Func, sync_performer
from effect.retry import retry as effect_retry

from twisted.python.failure import Failure


def terminal_errors_except(*args):
    """
    Returns a ``can_retry`` function that only retries errors of the
    ``Exception`` types specified.
    """
    def can_retry(f):
        return f.check(*args) is not None

    return can_retry


def retry_times(max_tries):
    """
    Returns a ``can_retry`` function that returns True until it has been
    called ``max_tries`` times.
    """
    return RetryTimes(max_retries=max_tries)


def compose_retries(*can_retry_funcs):
    """
    Compose ``can_retry`` functions into one that returns True only if all
    of them do. They are called in order and evaluation stops at the first
    False, so stateful ones like :func:`retry_times` should come last.
    """
    def can_retry(f):
        for func in can_retry_funcs:
            if not func(f):
                return False
        return True

    return can_retry


def exponential_backoff_interval(start=2):
    """
    Returns a ``next_interval`` function that returns previous interval * 2
    as new interval each time it is called.

    :param start: number of seconds > 0 to start with
    """
    return ExponentialBackoffInterval(start=start)


@attr.s
class ExponentialBackoffInterval(object):
    """
    A callable that returns the previous interval * 2 (starting at
    ``start``) every time it's called.
    """
    start = attr.ib()
    last_interval = attr.ib(default=0)

    def __call__(self, failure):
        """Return an increasingly larger number."""
        if self.last_interval != 0:
            self.last_interval *= 2
        else:
            self.last_interval = self.start
        return self.last_interval


@attr.s
class RetryTimes(object):
    """
    A callable that returns True until it's been called ``max_retries``.
    """
    max_retries = attr.ib()
    tries = attr.ib(default=0)

    def __call__(self, failure):
        """Return True if this has been called <= ``max_retries``."""
        self.tries += 1
        return self.tries <= self.max_retries


@attr.s
class ShouldDelayAndRetry(object):
    """
    A callable which can be passed as the should_retry argument to
    :func:`effect.retry.retry`. Determines whether to retry and also causes
    a delay before retrying.

    :param can_retry: A callable of Failure -> Bool, indicating whether retry
        should occur
    :param next_interval: A callable of Failure -> interval to wait
    """
    can_retry = attr.ib()
    next_interval = attr.ib()

    def __call__(self, exc):
        """
        Determine whether retry should occur, based on the exception.
        """
        failure = Failure(exc)

        def doit():
            if self.can_retry(failure):
                interval = self.next_interval(failure)
                return Effect(Delay(interval)).on(lambda r: True)
            else:
                return False
        return Effect(Func(doit))


@attr.s
class Retry(object):
    """
    An effect intent that, when performed, executes another effect and
    potentially retries it.

    The retryable effect and its retry policy are public attributes, so a
    test can check that some effect would be retried without running the
    retries.

    :param effect: The effect to perform.
    :param should_retry: The function to call to determine whether retry
        should occur (usually an instance of :obj:`ShouldDelayAndRetry`).
    """
    effect = attr.ib()
    should_retry = attr.ib()


@sync_performer
def perform_retry(dispatcher, intent):
    """
    Invoke :func:`effect.retry.retry` with the effect and the
    should_retry function.
    """
    return effect_retry(intent.effect, intent.should_retry)


def retry_effect(effect, can_retry, next_interval):
    """
    Convenience function for wrapping an effect in a :obj:`Retry`.

    :return: :obj:`Effect` of :obj:`Retry`.
    """
    return Effect(Retry(
        effect=effect,
        should_retry=ShouldDelayAndRetry(can_retry=can_retry,
                                         next_interval=next_interval)))
