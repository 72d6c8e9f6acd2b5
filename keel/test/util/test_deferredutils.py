"""
Tests for :mod:`keel.util.deferredutils`
"""
from twisted.internet.defer import CancelledError, Deferred
from twisted.internet.task import Clock
from twisted.trial.unittest import SynchronousTestCase

from keel.test.utils import DummyException
from keel.util.deferredutils import TimedOutError, timeout_deferred


class TimeoutDeferredTests(SynchronousTestCase):
    """
    Tests for :func:`timeout_deferred`.
    """

    def setUp(self):
        self.clock = Clock()
        self.deferred = Deferred()
        timeout_deferred(self.deferred, 10, self.clock, 'apply net')

    def test_times_out(self):
        """
        A Deferred that has not fired after the timeout fails with
        :obj:`TimedOutError`.
        """
        self.clock.advance(9)
        self.assertNoResult(self.deferred)
        self.clock.advance(1)
        f = self.failureResultOf(self.deferred, TimedOutError)
        self.assertEqual(f.value.timeout, 10)
        self.assertEqual(str(f.value), 'apply net timed out after 10 seconds.')

    def test_result_cancels_timeout(self):
        """A result in time is passed on and the timeout is cancelled."""
        self.deferred.callback('ok')
        self.assertEqual(self.successResultOf(self.deferred), 'ok')
        self.assertEqual(self.clock.getDelayedCalls(), [])

    def test_error_passed_on(self):
        """An error in time is passed on unchanged."""
        self.deferred.errback(DummyException('no'))
        self.failureResultOf(self.deferred, DummyException)
        self.assertEqual(self.clock.getDelayedCalls(), [])

    def test_cancelled_by_caller(self):
        """Cancelling before the timeout is not a time out."""
        self.deferred.cancel()
        self.failureResultOf(self.deferred, CancelledError)
