import structlog

from .forwarder import HttpForwarder
from .messages import ProxyRequest, ProxyResponse, blocked_response
from .rules import FilterRules
from .tunnel import TunnelEstablisher

logger = structlog.get_logger()


class Dispatcher:
    """Enforces the filter rules and routes each request.

    CONNECT requests go to the tunnel establisher, everything else to the
    HTTP forwarder. Blocked requests are answered here and go nowhere else.
    """

    def __init__(
        self,
        rules: FilterRules,
        forwarder: HttpForwarder,
        tunnels: TunnelEstablisher,
    ):
        self.rules = rules
        self.forwarder = forwarder
        self.tunnels = tunnels

    async def dispatch(self, request: ProxyRequest) -> ProxyResponse:
        host = request.host

        if not self.rules.is_allowed(host):
            logger.warning(
                "request_blocked",
                method=request.method,
                target=request.target,
                host=host,
            )
            return blocked_response(host)

        logger.info(
            "request",
            method=request.method,
            target=request.target,
            host=host,
            decision="allowed",
        )

        if request.method == "CONNECT":
            return await self.tunnels.establish(request)
        return await self.forwarder.forward(request)
