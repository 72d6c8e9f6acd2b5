"""
Loggers with fields bound to every message.
"""

from functools import partial

from toolz.dicttoolz import merge


class BoundLog(object):
    """
    A pair of ``msg`` and ``err`` functions, in the manner of
    :func:`twisted.python.log.msg` and :func:`twisted.python.log.err`, that
    :meth:`bind` can partially apply keyword fields to.
    """
    def __init__(self, msg, err):
        self.msg = msg
        self.err = err

    def bind(self, **fields):
        """
        :return: a new :obj:`BoundLog` passing ``fields`` with every call,
            unless the call passes them itself
        """
        return BoundLog(partial(self.msg, **fields),
                        partial(self.err, **fields))


def bound_log_kwargs(log):
    """
    :return: ``dict`` of the fields bound to ``log``
    """
    fields = {}
    f = log.msg
    while isinstance(f, partial):
        fields = merge(f.keywords, fields)
        f = f.func
    return fields
