"""ACME issuance flow: account, order, HTTP-01 authorization and finalization."""

import datetime
import enum
import json
import os
import time

import josepy

import requests

from acme import challenges, client, errors, messages

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.hazmat.primitives.serialization import Encoding, NoEncryption, PrivateFormat
from cryptography.x509.oid import NameOID

from .certificates import IssuedCertificateBundle
from .output import WarningCode


ACCOUNT_KEY_SIZE = 2048


class AcmeDirectory(enum.Enum):
    PRODUCTION = 'https://acme-v02.api.letsencrypt.org/directory'
    STAGING = 'https://acme-staging-v02.api.letsencrypt.org/directory'

    @classmethod
    def select(cls, staging: bool) -> 'AcmeDirectory':
        return cls.STAGING if (staging) else cls.PRODUCTION

    @property
    def url(self) -> str:
        return self.value

    @property
    def description(self) -> str:
        return 'STAGING (testing)' if (AcmeDirectory.STAGING == self) else 'PRODUCTION'


class ProtocolErrorKind(enum.Enum):
    GENERAL = 'general'
    NETWORK = 'network'
    ACCOUNT = 'account'
    AUTHORIZATION = 'authorization'
    FINALIZATION = 'finalization'
    TIMEOUT = 'timeout'
    RATE_LIMITED = 'rateLimited'


class ProtocolError(Exception):
    """A failed step of the ACME exchange, classified for the user."""

    _hints = {
        ProtocolErrorKind.RATE_LIMITED: ("Rate limited by Let's Encrypt. Please wait before trying again.\n"
                                         'For testing, set STAGING=true or use --staging.'),
        ProtocolErrorKind.NETWORK: 'Check connectivity to the ACME directory and try again later.',
        ProtocolErrorKind.AUTHORIZATION: ('Make sure the domain resolves to this host and that port 80 '
                                          'is reachable from the internet.'),
        ProtocolErrorKind.TIMEOUT: 'The ACME server did not respond in time, try again later.',
    }

    def __init__(self, step, kind: ProtocolErrorKind, detail):
        self.step = step
        self.kind = kind
        self.detail = detail
        super().__init__('{step} failed: {detail}'.format(step=step, detail=detail))

    @property
    def hint(self):
        return self._hints.get(self.kind)


def classify_error(error, default=ProtocolErrorKind.GENERAL) -> ProtocolErrorKind:
    acme_error = error.error if (isinstance(error, errors.IssuanceError)) else error
    if (isinstance(acme_error, messages.Error) and ('rateLimited' == acme_error.code)):
        return ProtocolErrorKind.RATE_LIMITED
    if (isinstance(error, errors.TimeoutError)):
        return ProtocolErrorKind.TIMEOUT
    if (isinstance(error, requests.exceptions.Timeout)):
        return ProtocolErrorKind.TIMEOUT
    if (isinstance(error, requests.exceptions.RequestException)):
        return ProtocolErrorKind.NETWORK
    return default


def generate_rsa_key(key_size):
    return rsa.generate_private_key(public_exponent=65537, key_size=key_size)


def generate_ecdsa_key(key_curve):
    curves = {
        'secp256r1': ec.SECP256R1,
        'secp384r1': ec.SECP384R1,
        'secp521r1': ec.SECP521R1,
    }
    key_curve = key_curve.lower()
    if (key_curve not in curves):
        raise ValueError('Unsupported key curve: ' + key_curve)
    return ec.generate_private_key(curves[key_curve]())


def generate_private_key(key_type, options):
    if ('rsa' == key_type):
        return generate_rsa_key(*options)
    if ('ecdsa' == key_type):
        return generate_ecdsa_key(*options)
    raise ValueError('Unknown key type ' + key_type.upper())


def private_key_pem(private_key) -> str:
    return private_key.private_bytes(encoding=Encoding.PEM, format=PrivateFormat.TraditionalOpenSSL,
                                     encryption_algorithm=NoEncryption()).decode('ascii')


def generate_csr(private_key, common_name) -> bytes:
    csr = x509.CertificateSigningRequestBuilder().subject_name(
        x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    ).sign(private_key, hashes.SHA256())
    return csr.public_bytes(Encoding.PEM)


class AcmeOrchestrator:
    """Runs one order for one domain against an ACME directory.

    Challenge publication is delegated to a ``ChallengeHooks`` instance. For
    every pending authorization ``on_challenge_ready`` completes before the
    server is told to validate, and ``on_challenge_done`` always follows the
    validation attempt.
    """

    def __init__(self, directory_url, reporter, *, key_type='rsa', key_size=2048, key_curve='secp384r1',
                 authorization_delay=5, max_authorization_attempts=30, cert_poll_time=90,
                 account_key_path=None, user_agent='acmerenew'):
        self.directory_url = directory_url
        self.reporter = reporter
        self.key_type = key_type
        self.key_size = key_size
        self.key_curve = key_curve
        self.authorization_delay = authorization_delay
        self.max_authorization_attempts = max_authorization_attempts
        self.cert_poll_time = cert_poll_time
        self.account_key_path = account_key_path
        self.user_agent = user_agent
        self.account_key = None
        self.acme_client = None
        self.registration = None
        self._generated_account_key = False

    def issue(self, context, hooks) -> IssuedCertificateBundle:
        self.account_key = self._step('Account key', ProtocolErrorKind.GENERAL, self.load_account_key)
        self.acme_client = self._step('Connection', ProtocolErrorKind.NETWORK, self.connect, self.account_key)
        self._step('Account registration', ProtocolErrorKind.ACCOUNT, self.register, context.contact_email)
        key_pem, csr_pem = self._step('Certificate signing request', ProtocolErrorKind.GENERAL, self.create_csr, context.domain)
        order = self._step('Order', ProtocolErrorKind.GENERAL, self.create_order, csr_pem)
        self._step('Authorization', ProtocolErrorKind.AUTHORIZATION, self.authorize, order, hooks)
        fullchain_pem = self._step('Finalization', ProtocolErrorKind.FINALIZATION, self.finalize, order)
        return IssuedCertificateBundle(key_pem, fullchain_pem)

    def _step(self, step, kind, function, *args):
        try:
            return function(*args)
        except ProtocolError:
            raise
        except Exception as error:
            raise ProtocolError(step, classify_error(error, kind), error) from error

    def load_account_key(self):
        if (self.account_key_path and os.path.isfile(self.account_key_path)):
            with open(self.account_key_path) as account_key_file:
                account_key = josepy.JWKRSA.fields_from_json(json.load(account_key_file))
            self.reporter.detail('Loaded account key ', self.account_key_path, '\n')
            return account_key
        self.reporter.debug('Generating account key\n')
        self._generated_account_key = True
        return josepy.JWKRSA(key=generate_rsa_key(ACCOUNT_KEY_SIZE))

    def save_account_key(self):
        account_key_dir = os.path.dirname(self.account_key_path)
        if (account_key_dir and not os.path.isdir(account_key_dir)):
            os.makedirs(account_key_dir, mode=0o700)
        with open(self.account_key_path, 'w', opener=lambda path, flags: os.open(path, flags, mode=0o600)) as account_key_file:
            account_key_file.write(json.dumps(self.account_key.fields_to_partial_json()))
        self.reporter.detail('Saved account key ', self.account_key_path, '\n')

    def connect(self, account_key):
        self.reporter.status('\nUsing ACME directory: ', self.directory_url, '\n')
        network = client.ClientNetwork(account_key, user_agent=self.user_agent)
        directory = client.ClientV2.get_directory(self.directory_url, network)
        return client.ClientV2(directory, net=network)

    def register(self, email):
        self.reporter.status('\nRegistering ACME account...\n')
        registration = messages.NewRegistration.from_data(email=email, terms_of_service_agreed=True)
        try:
            self.registration = self.acme_client.new_account(registration)
        except errors.ConflictError as error:
            self.reporter.debug('Account already registered at ', error.location, '\n')
            self.registration = self.acme_client.query_registration(
                messages.RegistrationResource(uri=error.location, body=messages.Registration()))
        self.reporter.status('Account registered successfully\n')
        if (self._generated_account_key and self.account_key_path):
            try:
                self.save_account_key()
            except Exception as error:
                self.reporter.warn('Unable to save account key to ', self.account_key_path, '\n', self.reporter.indent(error), '\n',
                                   code=WarningCode.KEY)
        return self.registration

    def create_csr(self, domain):
        self.reporter.status('\nGenerating certificate signing request...\n')
        options = (self.key_size, ) if ('rsa' == self.key_type) else (self.key_curve, )
        private_key = generate_private_key(self.key_type, options)
        return private_key_pem(private_key), generate_csr(private_key, domain)

    def create_order(self, csr_pem):
        self.reporter.status('\nOrdering certificate...\n')
        return self.acme_client.new_order(csr_pem)

    def select_http01(self, authorization):
        for challenge in authorization.body.challenges:
            if (isinstance(challenge.chall, challenges.HTTP01)):
                return challenge
        raise ProtocolError('Authorization', ProtocolErrorKind.AUTHORIZATION,
                            'HTTP-01 challenge was not offered for ' + authorization.body.identifier.value)

    def authorize(self, order, hooks):
        for authorization in order.authorizations:
            domain_name = authorization.body.identifier.value
            if (messages.STATUS_VALID == authorization.body.status):
                self.reporter.detail(domain_name, ' already authorized\n')
            elif (messages.STATUS_PENDING == authorization.body.status):
                self.reporter.debug('Requesting authorization for ', domain_name, '\n')
                self.validate(authorization, self.select_http01(authorization), hooks)
            else:
                raise ProtocolError('Authorization', ProtocolErrorKind.AUTHORIZATION,
                                    'Unexpected status "{status}" for authorization of {domain}'.format(status=authorization.body.status,
                                                                                                       domain=domain_name))

    def validate(self, authorization, challenge, hooks):
        response, key_authorization = challenge.response_and_validation(self.account_key)
        try:
            hooks.on_challenge_ready(authorization, challenge, key_authorization)
            self.reporter.debug('Answering challenge for ', authorization.body.identifier.value, '\n')
            self.acme_client.answer_challenge(challenge, response)
            return self.poll_authorization(authorization, challenge)
        finally:
            self._challenge_done(hooks, authorization, challenge)

    def _challenge_done(self, hooks, authorization, challenge):
        try:
            hooks.on_challenge_done(authorization, challenge)
        except Exception as error:
            self.reporter.warn('Unable to remove challenge for ', authorization.body.identifier.value, '\n',
                               self.reporter.indent(error), '\n', code=WarningCode.CLEANUP)

    def _wait(self, when):
        now = datetime.datetime.now()
        if (now < when):
            seconds = (when - now).seconds
            if (0 < seconds):
                time.sleep(seconds)

    def poll_authorization(self, authorization, challenge):
        domain_name = authorization.body.identifier.value
        attempts = 0
        while True:
            self.reporter.debug('Polling for ', domain_name, '\n')
            authorization, response = self.acme_client.poll(authorization)
            attempts += 1
            status = authorization.body.status
            if (messages.STATUS_VALID == status):
                self.reporter.debug('Authorization received\n')
                return authorization
            if (messages.STATUS_INVALID == status):
                error = None
                for polled_challenge in authorization.body.challenges:
                    if (polled_challenge.chall.typ == challenge.chall.typ):
                        error = polled_challenge.error
                raise ProtocolError('Authorization', classify_error(error, ProtocolErrorKind.AUTHORIZATION),
                                    'Authorization failed for {domain}: {detail}'.format(
                                        domain=domain_name, detail=(error.detail if (error and error.detail) else 'Unknown error')))
            if (status not in (messages.STATUS_PENDING, messages.STATUS_PROCESSING)):
                raise ProtocolError('Authorization', ProtocolErrorKind.AUTHORIZATION,
                                    'Unexpected status "{status}" for authorization of {domain}'.format(status=status, domain=domain_name))
            if (self.max_authorization_attempts <= attempts):
                raise ProtocolError('Authorization', ProtocolErrorKind.TIMEOUT, 'Authorization timed out for ' + domain_name)
            self.reporter.detail('Retrying\n')
            self._wait(self.acme_client.retry_after(response, default=self.authorization_delay))

    def finalize(self, order):
        deadline = datetime.datetime.now() + datetime.timedelta(seconds=self.cert_poll_time)
        order = self.acme_client.finalize_order(order, deadline)
        if (not order.fullchain_pem):
            raise ProtocolError('Finalization', ProtocolErrorKind.FINALIZATION, 'No certificate returned for order ' + str(order.uri))
        self.reporter.debug('Certificate issued\n')
        return order.fullchain_pem
