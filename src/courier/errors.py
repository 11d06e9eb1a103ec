""" Exceptions raised by the confirmation tracker, the publisher, and the
    request/response layer. Transport-level failures are defined separately,
    in :mod:`courier.transport.base`.
"""


class CourierError(Exception):
    """ Base class for all delivery-outcome errors.
    """


class ConfirmTimeoutError(CourierError):
    """ The drain deadline passed with messages still unconfirmed. The
        :attr:`outstanding` entries have an unknown fate and should be
        treated as failed by the caller.
    """

    def __init__(self, outstanding, timeout=None):

        self.outstanding = list(outstanding)
        self.timeout = timeout

        message = '%d message(s) unconfirmed' % (len(self.outstanding))
        if timeout is not None:
            message += ' after %.2f sec' % (timeout)

        CourierError.__init__(self, message)


class RejectedMessageError(CourierError):
    """ The broker explicitly rejected (nack'd) one or more messages.
    """

    def __init__(self, rejected):

        self.rejected = list(rejected)
        sequence = ', '.join(str(entry.sequence_number) for entry in self.rejected)
        CourierError.__init__(self, 'rejected by broker: ' + sequence)


class RpcTimeoutError(CourierError):
    """ No reply matching :attr:`correlation_id` arrived in time.
    """

    def __init__(self, correlation_id, timeout=None):

        self.correlation_id = correlation_id
        self.timeout = timeout

        message = 'no reply for ' + str(correlation_id)
        if timeout is not None:
            message += ' in %.2f sec' % (timeout)

        CourierError.__init__(self, message)


class MalformedRequestError(CourierError, ValueError):
    """ A request argument is outside the handler's valid domain, or could
        not be decoded at all.
    """


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
