"""Router contract, its collaborators and the in-process execution host."""

from .consumer import ConsumerBase, RequestVar
from .host import Chain, Msg, Receipt
from .router import Router
from .token import Token

__all__ = ["Chain", "ConsumerBase", "Msg", "Receipt", "RequestVar", "Router", "Token"]
