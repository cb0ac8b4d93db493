"""HTTP-01 challenge tokens and the transient server that answers them."""

import abc
import collections
import http.server
import threading
import urllib.parse
from typing import Optional

from .output import WarningCode


CHALLENGE_PATH_PREFIX = '/.well-known/acme-challenge/'

ChallengeToken = collections.namedtuple('ChallengeToken', ['token', 'key_authorization'])


class ChallengeTokenStore:
    """Token to key authorization mapping shared by the hooks and the responder."""

    def __init__(self):
        self._tokens = {}
        self._lock = threading.Lock()

    def put(self, token: str, key_authorization: str):
        with self._lock:
            self._tokens[token] = ChallengeToken(token, key_authorization)

    def get(self, token: str) -> Optional[str]:
        with self._lock:
            challenge_token = self._tokens.get(token)
        return challenge_token.key_authorization if (challenge_token) else None

    def remove(self, token: str):
        with self._lock:
            self._tokens.pop(token, None)

    def clear(self):
        with self._lock:
            self._tokens.clear()

    def __contains__(self, token):
        with self._lock:
            return (token in self._tokens)

    def __len__(self):
        with self._lock:
            return len(self._tokens)


class ChallengeHooks(abc.ABC):
    """Capability used by the orchestrator to publish and withdraw challenges.

    ``on_challenge_ready`` must have made the key authorization servable by the
    time it returns, the orchestrator tells the ACME server the challenge is
    ready only afterwards. ``on_challenge_done`` is cleanup and is called once
    the validation attempt for an authorization is over, whatever its outcome.
    """

    @abc.abstractmethod
    def on_challenge_ready(self, authorization, challenge, key_authorization: str):
        pass

    @abc.abstractmethod
    def on_challenge_done(self, authorization, challenge):
        pass


class TokenStoreHooks(ChallengeHooks):

    def __init__(self, store: ChallengeTokenStore, reporter):
        self.store = store
        self.reporter = reporter

    def on_challenge_ready(self, authorization, challenge, key_authorization):
        token = challenge.chall.encode('token')
        self.reporter.debug('Creating challenge for ', authorization.body.identifier.value, '\n')
        self.store.put(token, key_authorization)
        self.reporter.detail('Challenge token stored: ', token, '\n')

    def on_challenge_done(self, authorization, challenge):
        self.reporter.debug('Removing challenge for ', authorization.body.identifier.value, '\n')
        self.store.remove(challenge.chall.encode('token'))


class ChallengeRequestHandler(http.server.BaseHTTPRequestHandler):
    server_version = 'acmerenew'

    def _key_authorization(self):
        path = urllib.parse.urlsplit(self.path).path
        if (not path.startswith(CHALLENGE_PATH_PREFIX)):
            return None, None
        token = path[len(CHALLENGE_PATH_PREFIX):]
        return token, self.server.token_store.get(token)

    def _respond(self, send_body):
        token, key_authorization = self._key_authorization()
        if (key_authorization is not None):
            self.server.reporter.debug('Serving challenge for token: ', token, '\n')
            body = key_authorization.encode('utf-8')
            self.send_response(200)
            self.send_header('Content-Type', 'text/plain')
        else:
            if (token is not None):
                self.server.reporter.debug('Challenge token not found: ', token, '\n')
            body = b'Not found'
            self.send_response(404)
            self.send_header('Content-Type', 'text/plain')
        self.send_header('Content-Length', str(len(body)))
        self.end_headers()
        if (send_body):
            self.wfile.write(body)

    def do_GET(self):
        self._respond(True)

    def do_HEAD(self):
        self._respond(False)

    def log_message(self, format, *args):
        self.server.reporter.detail(self.address_string(), ' - ', format % args, '\n')


class ChallengeServer(http.server.ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, server_address, token_store, reporter):
        self.token_store = token_store
        self.reporter = reporter
        super().__init__(server_address, ChallengeRequestHandler)


class ChallengeResponder:
    """Serves HTTP-01 validation requests for the lifetime of one issuance.

    ``start`` binds the listening socket and returns once requests are being
    served; a ``PermissionError`` from binding a privileged port propagates to
    the caller. ``stop`` is safe to call when ``start`` never completed.
    """

    def __init__(self, token_store: ChallengeTokenStore, reporter, port=80, address=''):
        self.token_store = token_store
        self.reporter = reporter
        self.port = port
        self.address = address
        self._server = None
        self._thread = None

    @property
    def running(self) -> bool:
        return (self._server is not None)

    @property
    def server_port(self) -> Optional[int]:
        return self._server.server_address[1] if (self._server) else None

    def start(self):
        if (self._server):
            return
        server = ChallengeServer((self.address, self.port), self.token_store, self.reporter)
        thread = threading.Thread(target=server.serve_forever, name='acme-challenge-server', daemon=True)
        thread.start()
        self._server = server
        self._thread = thread
        self.reporter.status('Challenge server listening on port ', self.server_port, '\n')

    def stop(self):
        if (not self._server):
            return
        server, thread = self._server, self._thread
        self._server = None
        self._thread = None
        try:
            server.shutdown()
            server.server_close()
            thread.join()
            self.reporter.status('Challenge server stopped\n')
        except Exception as error:
            self.reporter.warn('Unable to stop challenge server\n', self.reporter.indent(error), '\n', code=WarningCode.CLEANUP)
        finally:
            self.token_store.clear()

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, type, value, traceback):
        self.stop()
