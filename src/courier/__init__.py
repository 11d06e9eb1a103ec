""" Reliable messaging on top of an asynchronous broker: publisher
    confirmation tracking, and request/response correlation for callers
    that need to block for their own answer.
"""

# Utility components.

from . import config
from . import dispatch
from . import errors

# Submodules used by multiple other components.

from . import transport
from .transport import connect

# Primary public-facing interfaces.

from .confirm import ConfirmTracker, PendingConfirm
from .correlate import CallState, PendingCall, RpcCorrelator
from .publisher import PublishResult, ReliablePublisher, Strategy
from .rpc import RpcClient, RpcServer

from .errors import (
    CourierError,
    ConfirmTimeoutError,
    RejectedMessageError,
    RpcTimeoutError,
    MalformedRequestError,
)

__version__ = '0.1.0'

# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
