"""
Composable log observers for use with Twisted's log module.

The observers are chained by :func:`keel.log.setup.make_observer_chain`;
each one rewrites the event dictionary and passes it on.
"""
import json
import time
from datetime import datetime
from functools import singledispatch

from constantly import NamedConstant

from pyrsistent import PMap, PSet, PVector, thaw

from twisted.python.failure import Failure


ERROR_FIELDS = {"isError", "failure", "why"}

PRIMITIVE_FIELDS = {"time", "system", "id", "audit_log", "message"}


class LogLevel(object):
    """ Syslog levels used in the ``level`` field """
    INFO = 6
    ERROR = 3


@singledispatch
def serialize_to_jsonable(obj):
    """
    Serialize any object to a JSONable form
    """
    return repr(obj)


@serialize_to_jsonable.register(NamedConstant)
def _serialize_constant(constant):
    return constant.name


def _thaw_jsonable(obj):
    return thaw(obj)


for _persistent in (PMap, PVector, PSet):
    serialize_to_jsonable.register(_persistent, _thaw_jsonable)


class LoggingEncoder(json.JSONEncoder):
    """
    A JSONEncoder that knows about the objects keel puts in log events:
    datetimes, failures, named constants and persistent collections.
    Anything else is logged by its ``repr`` so that an unserializable field
    never drops the whole event.
    """
    serializers = [(datetime, lambda obj: obj.isoformat()),
                   (Failure, str),
                   (set, sorted),
                   (frozenset, sorted)]

    def default(self, obj):
        """
        Serialize obj using `serializers` above and fall back to
        :func:`serialize_to_jsonable`
        """
        for _type, serializer in self.serializers:
            if isinstance(obj, _type):
                return serializer(obj)
        return serialize_to_jsonable(obj)


def JSONObserverWrapper(observer, **kwargs):
    """
    Create an observer that will format the eventDict as JSON using the
    supplied keyword arguments and delegate to `observer`.

    :param ILogObserver observer: The observer to delegate message delivery to.

    :rtype: :class:`ILogObserver`
    """
    def JSONObserver(eventDict):
        if 'message' in eventDict:
            eventDict['message'] = ''.join(eventDict['message'])
        observer({'message': (json.dumps(eventDict,
                                         cls=LoggingEncoder, **kwargs),)})

    return JSONObserver


def StreamObserverWrapper(stream, delimiter='\n', buffered=False):
    """
    Create a log observer that will write text to the specified stream.

    :param str or None delimiter: A delimiter for each message.
    :param bool buffered: True if output should be buffered, if False we will
        call `flush` on the `stream` after writing every message.

    :rtype: :class:`ILogObserver`
    """
    def StreamObserver(eventDict):
        stream.write(''.join(eventDict['message']))

        if delimiter is not None:
            stream.write(delimiter)

        if not buffered:
            stream.flush()

    return StreamObserver


def SystemFilterWrapper(observer):
    """
    Normalize the system key so that Twisted's internal contexts (``-``, or
    ``tcp.Server,1,...``) are reported as ``keel``.
    """
    def SystemFilterObserver(eventDict):
        system = eventDict.get('system', '-')

        if system == '-':
            system = 'keel'
        elif ',' in system:
            eventDict['log_context'] = system
            system = 'keel'

        eventDict['system'] = system
        observer(eventDict)

    return SystemFilterObserver


def PEP3101FormattingWrapper(observer):
    """
    Format messages using PEP3101 format strings, filled from the event's
    own fields.
    """
    def PEP3101FormattingObserver(eventDict):
        if eventDict.get('why'):
            try:
                eventDict['why'] = eventDict['why'].format(**eventDict)
            except (KeyError, IndexError, ValueError):
                pass

        if 'message' in eventDict:
            message = ' '.join(eventDict['message'])

            if message:
                try:
                    eventDict['message'] = (message.format(**eventDict),)
                except Exception:
                    failure = Failure()
                    eventDict['message_formatting_error'] = str(failure)
                    eventDict['message'] = (message,)

        observer(eventDict)

    return PEP3101FormattingObserver


def ErrorFormattingWrapper(observer):
    """
    Return log observer that will format error if any and delegate it to
    given `observer`.

    An error event gets a message built from "why" and the failure, plus
    "traceback" and "exception_type" fields. The raw "isError", "why" and
    "failure" fields are removed and "level" is set if not already present.
    """

    def error_formatting_observer(event):

        message = ""

        if event.get("isError", False):
            level = LogLevel.ERROR

            if 'failure' in event:
                excp = event['failure'].value
                message = repr(excp)
                event['traceback'] = event['failure'].getTraceback()
                event['exception_type'] = excp.__class__.__name__
                details = serialize_to_jsonable(excp)
                if details != message:
                    event['error_details'] = details

            if event.get('why'):
                message = '{0}: {1}'.format(event['why'], message)

        else:
            level = LogLevel.INFO

        event.update({
            "message": (''.join(event.get("message", '')) or message, ),
            "level": event.get("level", level)
        })
        for k in ERROR_FIELDS:
            event.pop(k, None)

        observer(event)

    return error_formatting_observer


def ObserverWrapper(observer, hostname, seconds=None):
    """
    Create a log observer that adds host and timestamp information, in
    logstash's format, and delegates to `observer`.

    :param str hostname: The hostname to be used.
    :param ILogObserver observer: The log observer to call with our
        formatted data.
    :param seconds: A 0-argument callable that returns seconds since epoch.

    :rtype: :class:`ILogObserver`
    """

    if seconds is None:  # pragma: no cover
        seconds = time.time

    def Observer(eventDict):

        log_params = {
            "@version": 1,
            "host": hostname,
            "@timestamp": datetime.fromtimestamp(
                eventDict.get("time", seconds())).isoformat(),
            "keel_facility": eventDict.get("system", "keel"),
            "message": eventDict["message"]
        }

        for key, value in eventDict.items():
            if key not in PRIMITIVE_FIELDS:
                log_params[key] = value

        observer(log_params)

    return Observer
