"""Settlement client: submits a signed delegation for on-chain execution"""
import enum
import logging
from dataclasses import asdict, dataclass
from typing import Optional, Protocol

import httpx

from redemption_engine.core.config import settings

settlement_logger = logging.getLogger("settlement")


class SettlementErrorKind(str, enum.Enum):
    PERMANENT = "permanent"
    TRANSIENT = "transient"
    NONCE_COLLISION = "nonce_collision"

    @property
    def retryable(self) -> bool:
        return self is not SettlementErrorKind.PERMANENT


# Lower-cased message fragments that mark a delegation as unredeemable
PERMANENT_ERROR_MARKERS = (
    "invalid signature",
    "delegation expired",
    "invalid delegation format",
    "invalid token",
    "unauthorized",
    "insufficient funds",
)

NONCE_COLLISION_MARKER = "aa25 invalid account nonce"

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# Structured codes returned by the delegation server
ERROR_CODE_KINDS = {
    "INVALID_SIGNATURE": SettlementErrorKind.PERMANENT,
    "DELEGATION_EXPIRED": SettlementErrorKind.PERMANENT,
    "INVALID_DELEGATION_FORMAT": SettlementErrorKind.PERMANENT,
    "INVALID_TOKEN": SettlementErrorKind.PERMANENT,
    "UNAUTHORIZED": SettlementErrorKind.PERMANENT,
    "INSUFFICIENT_FUNDS": SettlementErrorKind.PERMANENT,
    "NONCE_COLLISION": SettlementErrorKind.NONCE_COLLISION,
    "UNAVAILABLE": SettlementErrorKind.TRANSIENT,
    "TIMEOUT": SettlementErrorKind.TRANSIENT,
}


def classify_error_message(message: str) -> SettlementErrorKind:
    """Classify a free-text settlement error. Anything unrecognized is transient."""
    lowered = (message or "").lower()
    if any(marker in lowered for marker in PERMANENT_ERROR_MARKERS):
        return SettlementErrorKind.PERMANENT
    if NONCE_COLLISION_MARKER in lowered:
        return SettlementErrorKind.NONCE_COLLISION
    return SettlementErrorKind.TRANSIENT


class SettlementError(Exception):
    """Settlement call failed; kind decides whether the attempt may be retried"""

    def __init__(self, message: str, kind: Optional[SettlementErrorKind] = None, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        if kind is None:
            kind = ERROR_CODE_KINDS.get((code or "").upper()) or classify_error_message(message)
        self.kind = kind

    @property
    def retryable(self) -> bool:
        return self.kind.retryable


def classify_settlement_error(error: Exception) -> SettlementErrorKind:
    """Structural kind when the error carries one, message matching otherwise"""
    if isinstance(error, SettlementError):
        return error.kind
    return classify_error_message(str(error))


@dataclass(frozen=True)
class ExecutionParams:
    """Where and how much a redemption should transfer"""
    merchant_address: str
    token_contract: str
    token_amount: int
    token_decimals: int
    chain_id: int
    network_name: str


def validate_redemption_inputs(serialized_delegation: str, params: ExecutionParams):
    """Reject a request the delegation server could never execute.

    Raised errors are permanent: retrying the same inputs cannot succeed.
    """
    problem = None
    if not (serialized_delegation or "").strip():
        problem = "delegation cannot be empty"
    elif params.merchant_address in ("", None, ZERO_ADDRESS):
        problem = "valid merchant address is required"
    elif params.token_contract in ("", None, ZERO_ADDRESS):
        problem = "valid token contract address is required"
    elif not params.token_amount:
        problem = "valid token amount is required"
    elif not params.token_decimals:
        problem = "valid token decimals is required"
    elif not params.chain_id:
        problem = "chain ID cannot be zero"
    elif not params.network_name:
        problem = "network name cannot be empty"

    if problem:
        raise SettlementError(f"Invalid redemption inputs: {problem}", kind=SettlementErrorKind.PERMANENT)


class SettlementClient(Protocol):
    def redeem(self, serialized_delegation: str, params: ExecutionParams) -> str:
        """Execute the delegation and return the transaction hash, or raise SettlementError"""
        ...


class DelegationServerClient:
    """Settlement client backed by the delegation server's HTTP API"""

    REDEEM_PATH = "/api/v1/delegations/redeem"

    def __init__(
        self,
        base_url: str = None,
        api_key: str = None,
        timeout: float = None,
        client: httpx.Client = None
    ):
        self.base_url = (base_url or settings.DELEGATION_SERVER_URL).rstrip("/")
        self.api_key = settings.DELEGATION_SERVER_API_KEY if api_key is None else api_key
        self.timeout = timeout or settings.DELEGATION_SERVER_TIMEOUT
        self._client = client or httpx.Client(timeout=self.timeout)

    def close(self):
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def _headers(self):
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def redeem(self, serialized_delegation: str, params: ExecutionParams) -> str:
        validate_redemption_inputs(serialized_delegation, params)

        url = f"{self.base_url}{self.REDEEM_PATH}"
        payload = {"delegation": serialized_delegation, "execution": asdict(params)}

        try:
            response = self._client.post(url, json=payload, headers=self._headers(), timeout=self.timeout)
        except httpx.TimeoutException as e:
            raise SettlementError(f"Delegation server timed out: {e}", kind=SettlementErrorKind.TRANSIENT) from e
        except httpx.RequestError as e:
            raise SettlementError(f"Delegation server unreachable: {e}", kind=SettlementErrorKind.TRANSIENT) from e

        if response.status_code >= 400:
            raise self._error_from_response(response)

        try:
            tx_hash = response.json().get("transaction_hash")
        except ValueError as e:
            raise SettlementError(f"Malformed delegation server response: {response.text[:200]}") from e

        if not tx_hash:
            raise SettlementError("Delegation server response missing transaction_hash")

        settlement_logger.info(
            f"Redeemed delegation on {params.network_name} (chain {params.chain_id}) "
            f"to {params.merchant_address}: {tx_hash}"
        )
        return tx_hash

    @staticmethod
    def _error_from_response(response: httpx.Response) -> SettlementError:
        error_data = {}
        try:
            if response.text:
                error_data = response.json()
        except ValueError:
            error_data = {"error": response.text[:200]}
        if not isinstance(error_data, dict):
            error_data = {"error": str(error_data)[:200]}

        message = error_data.get("error") or f"Delegation server returned HTTP {response.status_code}"
        code = error_data.get("code")

        kind = None
        if not code and response.status_code in (401, 403):
            kind = SettlementErrorKind.PERMANENT

        settlement_logger.warning(
            f"Delegation server error (HTTP {response.status_code}, code={code}): {message}"
        )
        return SettlementError(message, kind=kind, code=code)
