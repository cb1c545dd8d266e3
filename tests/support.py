"""
Scriptable httpx transport for provider, gateway and ledger tests.
"""

from typing import Callable, Union

import httpx

Scripted = Union[httpx.Response, Exception, Callable[[httpx.Request], httpx.Response]]

WEB3_HOST = "api.web3.storage"
PINATA_HOST = "api.pinata.cloud"
NFT_HOST = "api.nft.storage"
GATEWAY_HOST = "ipfs.io"


def refused(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("Connection refused", request=request)


def timed_out(request: httpx.Request) -> httpx.Response:
    raise httpx.ReadTimeout("ETIMEDOUT", request=request)


class ScriptedTransport(httpx.MockTransport):
    """
    Answers per host from a script; the last step repeats.

    Every request is recorded (body read) in ``requests``.
    """

    def __init__(self, scripts: dict[str, list[Scripted]] = None):
        self.scripts: dict[str, list[Scripted]] = {k: list(v) for k, v in (scripts or {}).items()}
        self.requests: list[httpx.Request] = []
        super().__init__(self._handle)

    def script(self, host: str, *steps: Scripted) -> None:
        self.scripts[host] = list(steps)

    def calls(self, host: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.host == host]

    def _handle(self, request: httpx.Request) -> httpx.Response:
        request.read()
        self.requests.append(request)
        steps = self.scripts.get(request.url.host)
        if not steps:
            return httpx.Response(404, json={"error": "no script"})
        step = steps.pop(0) if len(steps) > 1 else steps[0]
        if isinstance(step, Exception):
            raise step
        if callable(step):
            return step(request)
        return httpx.Response(step.status_code, headers=step.headers, content=step.content)
