import logging
import socketserver
from typing import Optional

from ..dispatcher import QueryDispatcher

logger = logging.getLogger("burrow.server")


class DNSUDPHandler(socketserver.BaseRequestHandler):
    """
    Handles UDP DNS requests.
    This class is instantiated for each incoming DNS query, on its own thread.

    Example use:
        This handler is used internally by the DNSServer and is not
        typically instantiated directly by users.
    """

    dispatcher: Optional[QueryDispatcher] = None

    def handle(self):
        """Process a single UDP DNS query through the shared dispatcher.

        Inputs:
          - None (called by socketserver for each UDP datagram).
        Outputs:
          - None; sends at most one DNS response back to the client.

        When the dispatcher aborts the query (malformed input, upstream
        exhausted) nothing is sent and the client observes a timeout.
        """
        data, sock = self.request
        logger.debug("Received DNS query from %s:%s", *self.client_address[:2])

        dispatcher = self.dispatcher
        if dispatcher is None:  # pragma: no cover - server wiring error
            logger.error("No dispatcher configured; dropping query")
            return

        try:
            wire = dispatcher.handle(data, self.client_address)
        except Exception:  # pragma: no cover
            logger.exception("Unhandled error processing query")
            return
        if not wire:
            return

        try:
            sock.sendto(wire, self.client_address)
        except OSError as e:
            logger.error("Error sending response to %s: %s", self.client_address, e)


class DNSServer:
    """A threaded UDP DNS server wrapper.

    Example use:
        >>> from burrow.servers.udp_server import DNSServer
        >>> import threading
        >>> # dispatcher = QueryDispatcher(resolver)
        >>> server = DNSServer("127.0.0.1", 5355, dispatcher)
        >>> server_thread = threading.Thread(target=server.serve_forever, daemon=True)
        >>> server_thread.start()
        >>> server.shutdown()
    """

    def __init__(self, host: str, port: int, dispatcher: QueryDispatcher) -> None:
        """Bind the listening socket.

        Inputs:
            host: The host to listen on.
            port: The port to listen on (0 picks a free port).
            dispatcher: QueryDispatcher handling every datagram.

        Raises:
            OSError when the address cannot be bound.
        """
        handler_cls = type(
            "BoundDNSUDPHandler", (DNSUDPHandler,), {"dispatcher": dispatcher}
        )
        self.dispatcher = dispatcher
        self.server = socketserver.ThreadingUDPServer((host, port), handler_cls)
        self.server.daemon_threads = True

    @property
    def address(self):
        return self.server.server_address

    def serve_forever(self) -> None:
        host, port = self.address[:2]
        logger.info("DNS server listening on %s:%d", host, port)
        try:
            self.server.serve_forever()
        finally:
            self.server.server_close()

    def shutdown(self) -> None:
        """Stop serve_forever() from another thread."""
        self.server.shutdown()
