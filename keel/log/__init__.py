"""
Package for all keel specific logging functionality.
"""

from twisted.python.log import err, msg

from keel.log.bound import BoundLog


log = BoundLog(msg, err).bind(system='keel')


__all__ = ['log']
