"""Bridge to the hosted FluidPay tokenizer iframe.

Card fields live inside an iframe served by FluidPay; the page only ever
sees the token the iframe hands back. The page environment is reached
through ``PageHost`` so the bridge never touches a browser API directly.
"""
import logging
from enum import Enum
from typing import Any, Optional, Protocol

from pydantic import BaseModel

from card_checkout.channel import Handler, Subscription, TokenChannel
from card_checkout.config import TOKENIZER_CONTAINER_ID
from card_checkout.errors import (
    CheckoutError,
    ConfigError,
    InitTimeoutError,
    TokenExtractionError,
)
from card_checkout.gateway_client import mask
from card_checkout.schemas import TokenizationEvent

logger = logging.getLogger(__name__)

TOKENIZER_GLOBAL = "Tokenizer"
INSTANCE_GLOBAL = "__fpTokenizerInstance"
INSTANCE_CONFIG_GLOBAL = "__fpTokenizerConfig"
CALLBACK_GLOBAL = "fluidPayCallback"

INIT_TIMEOUT = 4.0
POLL_INTERVAL = 0.05

GENERIC_FAILURE = "We could not read your card details. Please check them and try again."

# order matters; the hosted script has shipped each of these shapes
TOKEN_PATHS = (
    ("token",),
    ("data", "token"),
    ("payment_token",),
    ("data", "payment_token"),
)


class PageHost(Protocol):
    def has_script(self, src: str) -> bool: ...

    def inject_script(self, src: str) -> None: ...

    def get_global(self, name: str) -> Any: ...

    def set_global(self, name: str, value: Any) -> None: ...

    def post_message(self, container_id: str, message: dict) -> None: ...

    def sleep(self, seconds: float) -> None: ...

    def monotonic(self) -> float: ...


class TokenizerConfig(BaseModel):
    gateway_base_url: str = ""
    public_key: str = ""
    container_id: str = TOKENIZER_CONTAINER_ID

    @property
    def script_url(self) -> str:
        return f"{self.gateway_base_url.rstrip('/')}/tokenizer/tokenizer.js"


class BridgeState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    SUBMITTED = "submitted"
    TOKENIZED = "tokenized"
    FAILED = "failed"


def extract_token(response: Any) -> str:
    for path in TOKEN_PATHS:
        value = response
        for key in path:
            value = value.get(key) if isinstance(value, dict) else None
        if isinstance(value, str) and value:
            return value
    raise TokenExtractionError("Tokenizer response carried no token", raw=response)


class TokenizerBridge:
    def __init__(self, host: PageHost, channel: TokenChannel = None, callback_mode: bool = False,
                 init_timeout: float = INIT_TIMEOUT, poll_interval: float = POLL_INTERVAL):
        self.host = host
        self.channel = channel or TokenChannel()
        self.callback_mode = callback_mode
        self.init_timeout = init_timeout
        self.poll_interval = poll_interval
        self.state = BridgeState.IDLE
        self.config: Optional[TokenizerConfig] = None
        self.instance = None

    def mount(self, config: TokenizerConfig):
        if not config.gateway_base_url:
            self.state = BridgeState.FAILED
            raise ConfigError("Missing FLUIDPAY_BASE_URL")
        if not config.public_key:
            self.state = BridgeState.FAILED
            raise ConfigError("Missing FLUIDPAY_PUBLIC_KEY")
        if self.state not in (BridgeState.IDLE, BridgeState.LOADING, BridgeState.FAILED) and self.config == config:
            return

        self.config = config
        self.state = BridgeState.LOADING
        if self.callback_mode:
            # must exist before the script runs
            self.host.set_global(CALLBACK_GLOBAL, self._on_submission)

        src = config.script_url
        if not self.host.has_script(src):
            try:
                self.host.inject_script(src)
            except Exception as e:
                self.state = BridgeState.FAILED
                raise InitTimeoutError(f"Failed loading {src}: {e}") from e

        constructor = self._wait_for_global()
        if not self.callback_mode:
            self.instance = self.host.get_global(INSTANCE_GLOBAL)
            if self.instance is not None and self.host.get_global(INSTANCE_CONFIG_GLOBAL) != config:
                # built with another apikey/url; never reuse it
                self.instance = None
            if self.instance is None:
                self.instance = constructor({
                    "url": config.gateway_base_url,
                    "apikey": config.public_key,
                    "container": f"#{config.container_id}",
                    "submission": self._on_submission,
                })
                self.host.set_global(INSTANCE_GLOBAL, self.instance)
                self.host.set_global(INSTANCE_CONFIG_GLOBAL, config)
        self.state = BridgeState.READY
        logger.info("Tokenizer ready in #%s", config.container_id)

    def _wait_for_global(self):
        started = self.host.monotonic()
        while True:
            constructor = self.host.get_global(TOKENIZER_GLOBAL)
            if constructor is not None:
                return constructor
            if self.host.monotonic() - started > self.init_timeout:
                self.state = BridgeState.FAILED
                raise InitTimeoutError("Tokenizer global not found on window")
            self.host.sleep(self.poll_interval)

    def on_token_received(self, handler: Handler) -> Subscription:
        return self.channel.subscribe(handler)

    def request_submit(self):
        """Ask the iframe to submit. The result arrives on the channel."""
        if self.state not in (BridgeState.READY, BridgeState.TOKENIZED, BridgeState.FAILED) or self.config is None:
            raise CheckoutError("Tokenizer is not ready")
        self.state = BridgeState.SUBMITTED
        if self.callback_mode:
            self.host.post_message(self.config.container_id, {"event": "submit"})
        else:
            self.instance.submit()

    def _on_submission(self, response: Any):
        try:
            token = extract_token(response)
        except TokenExtractionError as e:
            logger.warning("Unrecognized tokenizer response: %r", e.raw)
            self.state = BridgeState.FAILED
            message = None
            if isinstance(response, dict):
                message = response.get("msg") or response.get("message")
            self.channel.publish(TokenizationEvent(raw_gateway_response=response, error=message or GENERIC_FAILURE))
            return
        logger.info("Tokenizer issued token %s", mask(token))
        self.state = BridgeState.TOKENIZED
        self.channel.publish(TokenizationEvent(token=token, raw_gateway_response=response))
