"""
JSON-RPC message models for the MCP bridge endpoint.
"""

from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, Field

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
SERVER_ERROR = -32000

RequestId = Union[str, int, None]


class RPCRequest(BaseModel):
    """Incoming JSON-RPC request or notification."""

    jsonrpc: str = Field(default="2.0", description="Protocol marker")
    method: str = Field(..., min_length=1, description="MCP method name")
    params: Optional[Dict[str, Any]] = Field(default=None, description="Method parameters")
    id: RequestId = Field(default=None, description="Request ID; absent for notifications")

    # Bridge-side context, never read from the body
    user_id: str = Field(default="default", exclude=True)
    session_id: Optional[str] = Field(default=None, exclude=True)

    @property
    def is_notification(self) -> bool:
        return "id" not in self.model_fields_set

    def param(self, name: str, default: Any = None) -> Any:
        return (self.params or {}).get(name, default)


class RPCError(Exception):
    """Raised inside method handlers to produce a JSON-RPC error reply."""

    def __init__(self, code: int, message: str, data: Optional[Any] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data

    def to_dict(self) -> Dict[str, Any]:
        error: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data is not None:
            error["data"] = self.data
        return error


def rpc_result(request_id: RequestId, result: Any) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "result": result}


def rpc_error(request_id: RequestId, error: RPCError) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "error": error.to_dict()}
