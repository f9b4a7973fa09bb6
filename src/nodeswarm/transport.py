"""HTTP message transport between swarm members.

A message is a POST to /<topic>/<sub>/... on the receiving node. Every path
segment that has handlers is a matching topic; all matching handlers run and
their results are collected into the response. The body is JSON when the
sender used application/json, raw text otherwise.
"""
import json
import logging
import threading
from collections import defaultdict
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, wait

import requests
from flask import Flask, Response, request
from werkzeug.serving import make_server

from nodeswarm.config import DEFAULT_PORT
from nodeswarm.errors import TransportError
from nodeswarm.membership import Node

logger = logging.getLogger(__name__)

__all__ = ['HttpTransport', 'node_address']

METHODS = ['POST', 'PUT']


def node_address(node_id: str, default_port: int = DEFAULT_PORT) -> str:
    """Return host:port for a node id, adding default_port when the id has none.
    """
    if ':' in node_id:
        return node_id
    return f'{node_id}:{default_port}'


class HttpTransport:
    """Flask application served by werkzeug on a daemon thread, with a requests client.
    """

    def __init__(
        self,
        host: str = '0.0.0.0',
        port: int = DEFAULT_PORT,
        request_timeout: float = 30,
        max_processing_time: float = 300,
        peer_port: int = None,
    ):
        """Initialize transport.

        Args:
            host: Interface to bind
            port: Port to bind, 0 picks a free port
            request_timeout: Seconds to wait for an outbound round trip
            max_processing_time: Seconds inbound handlers may take before the request fails
            peer_port: Port used for node ids without one (defaults to port)
        """
        self.host = host
        self.port = port
        self.peer_port = peer_port or port or DEFAULT_PORT
        self.request_timeout = request_timeout
        self.max_processing_time = max_processing_time
        self._handlers = defaultdict(list)
        self._handlers_lock = threading.Lock()
        self._session = requests.Session()
        self._server = None
        self.thread = None

        self.app = Flask(__name__)
        self.app.add_url_rule('/', 'root', self._handle, methods=METHODS, defaults={'path': ''})
        self.app.add_url_rule('/<path:path>', 'message', self._handle, methods=METHODS)

    def on(self, topic: str | list[str], handler: Callable) -> None:
        """Register handler(message, topics, sender) for one topic or a list of topics.
        """
        if isinstance(topic, (list, tuple)):
            for t in topic:
                self.on(t, handler)
            return
        with self._handlers_lock:
            self._handlers[topic].append(handler)

    def handlers(self, topic: str) -> list[Callable]:
        with self._handlers_lock:
            return list(self._handlers.get(topic, ()))

    def start(self) -> None:
        """Bind the server and serve on a daemon thread.
        """
        if self._server is not None:
            return
        self._server = make_server(self.host, self.port, self.app, threaded=True)
        self.port = self._server.server_port
        self.thread = threading.Thread(target=self._server.serve_forever, daemon=True,
                                       name=f'transport-{self.port}')
        self.thread.start()
        logger.info(f'Messages: Listening on {self.host}:{self.port}')

    def stop(self) -> None:
        if self._server is not None:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
        if self.thread is not None:
            self.thread.join(timeout=10)
            self.thread = None
        self._session.close()

    def _handle(self, path: str) -> Response:
        sender = request.remote_addr
        topics = [topic for topic in path.strip('/').split('/') if topic]
        body = request.get_data(as_text=True) or None
        logger.info(f'Messages received: {topics} from {sender}')

        if request.mimetype == 'application/json':
            try:
                body = json.loads(body) if body else None
            except ValueError as e:
                return Response(f'Unable to decode request body: {e}', status=400)

        handlers = [handler for topic in topics for handler in self.handlers(topic)]
        if not handlers:
            return self._respond(None)

        # one worker per handler, so a slow topic never holds up another request
        pool = ThreadPoolExecutor(max_workers=len(handlers), thread_name_prefix='nodeswarm-message')
        try:
            futures = [pool.submit(handler, body, topics, sender) for handler in handlers]
            _, not_done = wait(futures, timeout=self.max_processing_time)
        finally:
            pool.shutdown(wait=False, cancel_futures=True)
        if not_done:
            message = f'Processing of {topics} exceeded {self.max_processing_time}s'
            logger.warning(f'Messages.handle: sending error : {message}')
            return Response(message, status=500)

        try:
            results = [future.result() for future in futures]
        except Exception as e:
            logger.warning(f'Messages.handle: sending error : {e}')
            return Response(str(e), status=getattr(e, 'status_code', 500))

        return self._respond(results[0] if len(results) == 1 else results)

    @staticmethod
    def _respond(result) -> Response:
        if result is None:
            return Response(status=204)
        if isinstance(result, str):
            return Response(result, status=200, mimetype='text/plain')
        try:
            payload = json.dumps(result)
        except (TypeError, ValueError) as e:
            logger.error(f'Unable to serialize response: {e}')
            return Response(f'Unable to serialize response: {e}', status=500)
        return Response(payload, status=200, mimetype='application/json')

    def send(self, node: str | Node, topic: str | list[str], message=None):
        """Send message to topic on node and return its response.

        Strings are sent as text, anything else as JSON.

        Returns
            Decoded JSON response, text response, or None for an empty response

        Raises
            TypeError: If node or topic has the wrong type
            TransportError: On network failure or a non-success status
        """
        node_id = node.id if isinstance(node, Node) else node
        if not isinstance(node_id, str):
            raise TypeError(f'Send Error, parameter node needs to be a string, {type(node).__name__} found.')
        if isinstance(topic, (list, tuple)):
            topic = '/'.join(topic)
        elif not isinstance(topic, str):
            raise TypeError(f'Send Error, parameter topic needs to be a string or a list, {type(topic).__name__} found.')

        url = f'http://{node_address(node_id, self.peer_port)}/{topic}'
        if isinstance(message, str):
            kwargs = {'data': message.encode(), 'headers': {'Content-Type': 'text/plain; charset=utf-8'}}
        else:
            kwargs = {'json': message}

        try:
            response = self._session.post(url, timeout=self.request_timeout, **kwargs)
        except requests.RequestException as e:
            raise TransportError(f'Send to {node_id}/{topic} failed: {e}', node_id, topic) from e

        if not response.ok:
            raise TransportError(f'{node_id}/{topic} answered {response.status_code}: {response.text}',
                                 node_id, topic, response.status_code)
        if response.status_code == 204 or not response.content:
            return None
        if response.headers.get('Content-Type', '').startswith('application/json'):
            return response.json()
        return response.text
