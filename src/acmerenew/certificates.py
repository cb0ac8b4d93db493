import collections
import datetime
import os
import re
import tempfile
from typing import Optional

import OpenSSL

from .output import ErrorCode


CERTIFICATE_BOUNDARY = '-----BEGIN CERTIFICATE-----'

IssuedCertificateBundle = collections.namedtuple('IssuedCertificateBundle', ['private_key', 'fullchain_pem'])


def datetime_from_asn1_generaltime(general_time):
    try:
        return datetime.datetime.strptime(general_time.decode('ascii'), '%Y%m%d%H%M%SZ').replace(tzinfo=datetime.timezone.utc)
    except ValueError:
        return datetime.datetime.strptime(general_time.decode('ascii'), '%Y%m%d%H%M%S%z')


def split_full_chain(fullchain_pem: str):
    """Split concatenated PEM certificates into blocks, leaf first.

    Each block starts at a BEGIN CERTIFICATE marker and keeps everything up to
    the next marker, so the blocks joined back together equal the input.
    """
    return [block for block in re.split('(?=' + CERTIFICATE_BOUNDARY + ')', fullchain_pem) if (block)]


class ExpiryPolicy:

    def __init__(self, reporter, renewal_days=30):
        self.reporter = reporter
        self.renewal_days = renewal_days

    def load_expiration(self, cert_path) -> Optional[datetime.datetime]:
        if (not os.path.isfile(cert_path)):
            self.reporter.debug('No existing certificate at ', cert_path, '\n')
            return None
        try:
            with open(cert_path, 'r') as certificate_file:
                certificate = OpenSSL.crypto.load_certificate(OpenSSL.crypto.FILETYPE_PEM, certificate_file.read().encode('ascii'))
            return datetime_from_asn1_generaltime(certificate.get_notAfter())
        except Exception as error:
            self.reporter.status('Could not read existing certificate info, proceeding with renewal\n')
            self.reporter.debug(self.reporter.indent(error), '\n')
            return None

    def decide(self, not_after, force_new_certificate=False, force_renew=False, now=None) -> bool:
        if (force_new_certificate):
            return True
        if (not_after is None):
            return True
        now = now or datetime.datetime.now(datetime.timezone.utc)
        days_until_expiry = (not_after - now).days
        if (days_until_expiry <= self.renewal_days):
            return True
        return bool(force_renew)

    def check(self, cert_path, force_new_certificate=False, force_renew=False, now=None) -> bool:
        if (force_new_certificate):
            self.reporter.status('NEW_CERT=true: Requesting a fresh certificate (ignoring any existing certs)...\n')
            return True
        not_after = self.load_expiration(cert_path)
        if (not_after is None):
            return True
        now = now or datetime.datetime.now(datetime.timezone.utc)
        self.reporter.status('Existing certificate expires: ', not_after.isoformat(), '\n')
        self.reporter.status('Days until expiry: ', (not_after - now).days, '\n')
        if (self.decide(not_after, now=now)):
            return True
        self.reporter.status('\nCertificate is still valid for more than ', self.renewal_days, ' days.\n',
                             'Set FORCE_RENEW=true to force renewal anyway.\n',
                             'Set NEW_CERT=true to request a completely new certificate.\n')
        if (not self.decide(not_after, force_renew=force_renew, now=now)):
            self.reporter.status('Skipping renewal.\n')
            return False
        self.reporter.status('FORCE_RENEW is set, proceeding with renewal...\n')
        return True


class FileTransaction(object):
    __slots__ = ['file', 'temp_file_path', 'file_type', 'file_path', 'chmod']

    def __init__(self, file_type, file_path, chmod=None, mode='w'):
        self.file_type = file_type
        self.file_path = file_path
        self.chmod = chmod
        temp_file_descriptor, self.temp_file_path = tempfile.mkstemp(dir=os.path.dirname(file_path) or None,
                                                                     prefix='.' + os.path.basename(file_path) + '.')
        self.file = open(temp_file_descriptor, mode)

    def __enter__(self):
        return self

    def __exit__(self, type, value, traceback):
        if (self.file):
            self.file.close()
            self.file = None
        if (type is not None):
            self.abort()

    def write(self, data):
        self.file.write(data)

    def abort(self):
        if (os.path.isfile(self.temp_file_path)):
            os.remove(self.temp_file_path)

    def commit(self):
        if (self.chmod is not None):
            os.chmod(self.temp_file_path, self.chmod)
        os.replace(self.temp_file_path, self.file_path)
        return self.file_path


class CertificateMaterializer:
    """Writes the issued key and chain as the five files consumers expect.

    Files are committed one at a time in a fixed order: private key, full
    chain, leaf certificate, intermediate chain, bundle. Each file is written
    to a temporary name and renamed, so a failure leaves every file either
    complete or untouched, but earlier files stay committed.
    """

    file_names = collections.OrderedDict([
        ('private_key', 'privkey.pem'),
        ('full_chain', 'fullchain.pem'),
        ('certificate', 'cert.pem'),
        ('chain', 'chain.pem'),
        ('bundle', 'bundle.pem'),
    ])
    descriptions = {
        'private_key': 'private key',
        'full_chain': 'full certificate chain',
        'certificate': 'domain certificate',
        'chain': 'intermediate certificates',
        'bundle': 'fullchain + private key',
    }
    file_modes = {
        'private_key': 0o640,
        'full_chain': 0o644,
        'certificate': 0o644,
        'chain': 0o644,
        'bundle': 0o640,
    }

    def __init__(self, certs_dir, reporter):
        self.certs_dir = certs_dir
        self.reporter = reporter

    def file_path(self, file_type):
        return os.path.join(self.certs_dir, self.file_names[file_type])

    def makedir(self):
        if (not os.path.isdir(self.certs_dir)):
            try:
                os.makedirs(self.certs_dir)
                self.reporter.status('Created certs directory\n')
            except Exception as error:
                self.reporter.fatal('Unable to create directory ', self.certs_dir, '\n', self.reporter.indent(error), '\n',
                                    code=ErrorCode.PERMISSION)

    def artifacts(self, bundle: IssuedCertificateBundle):
        blocks = split_full_chain(bundle.fullchain_pem)
        return collections.OrderedDict([
            ('private_key', bundle.private_key),
            ('full_chain', bundle.fullchain_pem),
            ('certificate', blocks[0] if (blocks) else ''),
            ('chain', ''.join(blocks[1:])),
            ('bundle', bundle.fullchain_pem + bundle.private_key),
        ])

    def save(self, bundle: IssuedCertificateBundle):
        self.makedir()
        self.reporter.status('\nSaving certificates...\n')
        saved = collections.OrderedDict()
        for file_type, content in self.artifacts(bundle).items():
            file_path = self.file_path(file_type)
            transaction = None
            try:
                transaction = FileTransaction(file_type, file_path, chmod=self.file_modes[file_type])
                with transaction:
                    transaction.write(content)
                saved[file_type] = transaction.commit()
            except Exception as error:
                if (transaction):
                    transaction.abort()
                self.reporter.fatal('Unable to write ', file_path, '\n', self.reporter.indent(error), '\n', code=ErrorCode.PERMISSION)
            self.reporter.status('  - ', self.file_names[file_type], ' (', self.descriptions[file_type], ')\n')
        return saved
