"""
Reward JSON-RPC 2.0 Server

Dispatches ``ledger_*`` calls arriving over HTTP or the websocket:
- Modules register their ``@rpc_method`` handlers under a namespace
- Batches are bounded by ``max_batch_size`` and run concurrently
- Params (list or object) are bound against the handler signature first
- Engine rejections carry their ErrorKind in ``error.data``
"""

import asyncio
import inspect
import json
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from ..exceptions import ErrorKind, LedgerError
from ..logger import get_logger

logger = get_logger(__name__)

RequestId = Union[str, int, None]

# Type for RPC method handlers
RPCMethod = Callable[..., Any]


class RPCErrorCode(IntEnum):
    """JSON-RPC 2.0 error codes used by the ledger node."""

    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603

    # Implementation-defined range (-32000 to -32099)
    RESOURCE_UNAVAILABLE = -32002   # retryable: store or price feed down
    TRANSACTION_REJECTED = -32003   # engine refused the order
    LIMIT_EXCEEDED = -32005


@dataclass
class RPCError(Exception):
    code: int
    message: str
    data: Optional[Any] = None

    def to_dict(self) -> dict:
        error = {"code": int(self.code), "message": self.message}
        if self.data is not None:
            error["data"] = self.data
        return error

    @classmethod
    def from_ledger(cls, kind: ErrorKind, message: str) -> "RPCError":
        """
        Rejection from the order engine. Retryable kinds map to
        RESOURCE_UNAVAILABLE, the rest to TRANSACTION_REJECTED.
        """
        code = (
            RPCErrorCode.RESOURCE_UNAVAILABLE if kind.retryable
            else RPCErrorCode.TRANSACTION_REJECTED
        )
        return cls(code, message, {"kind": kind.value, "retryable": kind.retryable})


@dataclass
class RPCRequest:
    jsonrpc: str
    method: Any
    params: Any
    id: RequestId

    @classmethod
    def from_dict(cls, data: Any) -> "RPCRequest":
        if not isinstance(data, dict):
            raise ValueError("Request must be an object")
        return cls(
            jsonrpc=data.get("jsonrpc", "2.0"),
            method=data.get("method", ""),
            params=data.get("params"),
            id=data.get("id"),
        )

    @property
    def is_notification(self) -> bool:
        """Requests without an id get no response."""
        return self.id is None


@dataclass
class RPCResponse:
    jsonrpc: str = "2.0"
    result: Optional[Any] = None
    error: Optional[Dict] = None
    id: RequestId = None

    @classmethod
    def failure(cls, req_id: RequestId, error: RPCError) -> "RPCResponse":
        return cls(id=req_id, error=error.to_dict())

    def to_dict(self) -> dict:
        body = {"jsonrpc": self.jsonrpc, "id": self.id}
        if self.error is not None:
            body["error"] = self.error
        else:
            body["result"] = self.result
        return body

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


# ---------------------------------------------------------------------------
# Method registration
# ---------------------------------------------------------------------------

def rpc_method(func: RPCMethod) -> RPCMethod:
    """
    Mark a module coroutine as callable over RPC.

    Usage:
        @rpc_method
        async def getGlobalStats(self) -> dict:
            return (await self.context.stats.get_global_stats()).to_dict()
    """
    func.__rpc_method__ = True
    return func


class RPCModule:
    """
    A namespace of RPC methods sharing one context object.

    ``LedgerModule(ctx)`` with namespace ``"ledger"`` exposes its
    ``openPosition`` handler as ``ledger_openPosition``.
    """

    namespace: str = ""

    def __init__(self, context: Any = None):
        self.context = context

    def get_methods(self) -> Dict[str, RPCMethod]:
        methods = {}
        for name in dir(self):
            if name.startswith("_"):
                continue
            handler = getattr(self, name)
            if callable(handler) and getattr(handler, "__rpc_method__", False):
                methods[f"{self.namespace}_{name}" if self.namespace else name] = handler
        return methods


# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------

class RPCServer:
    """
    Transport-independent JSON-RPC dispatcher.

    ``handle_request`` takes the raw frame (or decoded JSON) and returns the
    encoded response, or None when nothing should be sent back.
    """

    def __init__(self, max_batch_size: int = 50):
        self._methods: Dict[str, RPCMethod] = {}
        self._modules: Dict[str, RPCModule] = {}
        self.max_batch_size = max_batch_size

    def register_method(self, name: str, handler: RPCMethod) -> None:
        self._methods[name] = handler
        logger.debug(f"Registered RPC method: {name}")

    def register_module(self, module: RPCModule) -> None:
        methods = module.get_methods()
        self._methods.update(methods)
        self._modules[module.namespace] = module
        logger.info(f"Registered RPC module: {module.namespace} ({len(methods)} methods)")

    def get_methods(self) -> List[str]:
        return list(self._methods)

    async def handle_request(self, data: Union[str, bytes, dict, list]) -> Optional[str]:
        if isinstance(data, (str, bytes)):
            try:
                data = json.loads(data)
            except json.JSONDecodeError as e:
                error = RPCError(RPCErrorCode.PARSE_ERROR, f"Parse error: {e}")
                return RPCResponse.failure(None, error).to_json()

        if not isinstance(data, list):
            response = await self._handle_single(data)
            return json.dumps(response) if response is not None else None

        if not data:
            return RPCResponse.failure(
                None, RPCError(RPCErrorCode.INVALID_REQUEST, "Empty batch")
            ).to_json()
        if len(data) > self.max_batch_size:
            return RPCResponse.failure(None, RPCError(
                RPCErrorCode.LIMIT_EXCEEDED,
                f"Batch of {len(data)} exceeds limit {self.max_batch_size}",
            )).to_json()

        responses = await asyncio.gather(*[self._handle_single(item) for item in data])
        responses = [r for r in responses if r is not None]
        return json.dumps(responses) if responses else None

    async def _handle_single(self, data: Any) -> Optional[dict]:
        try:
            request = RPCRequest.from_dict(data)
        except ValueError:
            return RPCResponse.failure(
                None, RPCError(RPCErrorCode.INVALID_REQUEST, "Invalid request")
            ).to_dict()

        try:
            result = await self._dispatch(request)
        except RPCError as e:
            error = e
        except LedgerError as e:
            error = RPCError.from_ledger(e.kind, str(e))
        except Exception as e:
            logger.exception(f"Error handling RPC method {request.method}")
            error = RPCError(RPCErrorCode.INTERNAL_ERROR, str(e))
        else:
            if request.is_notification:
                return None
            return RPCResponse(id=request.id, result=result).to_dict()

        if request.is_notification:
            return None
        return RPCResponse.failure(request.id, error).to_dict()

    async def _dispatch(self, request: RPCRequest) -> Any:
        if request.jsonrpc != "2.0":
            raise RPCError(RPCErrorCode.INVALID_REQUEST, "Invalid JSON-RPC version")
        if not request.method or not isinstance(request.method, str):
            raise RPCError(RPCErrorCode.INVALID_REQUEST, "Missing method")

        handler = self._methods.get(request.method)
        if handler is None:
            raise RPCError(RPCErrorCode.METHOD_NOT_FOUND, f"Method not found: {request.method}")

        args, kwargs = self._bind(handler, request.params)
        return await handler(*args, **kwargs)

    @staticmethod
    def _bind(handler: RPCMethod, params: Any) -> Tuple[list, dict]:
        """Positional or named params, checked against the handler signature."""
        if params is None:
            args, kwargs = [], {}
        elif isinstance(params, list):
            args, kwargs = params, {}
        elif isinstance(params, dict):
            args, kwargs = [], params
        else:
            raise RPCError(RPCErrorCode.INVALID_PARAMS, "Params must be an array or object")

        try:
            inspect.signature(handler).bind(*args, **kwargs)
        except TypeError as e:
            raise RPCError(RPCErrorCode.INVALID_PARAMS, f"Invalid params: {e}")
        return args, kwargs
