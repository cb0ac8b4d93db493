#!/usr/bin/env python3

# Certificate renewal using the ACME protocol and HTTP-01 validation
#
# Binding the default challenge port needs root:
# sudo acmerenew --domain example.org --email admin@example.org


import argparse
import collections
import glob
import json
import os
import shlex
import subprocess
import sys
from importlib import metadata


import yaml

from .certificates import CertificateMaterializer, ExpiryPolicy
from .challenges import ChallengeResponder, ChallengeTokenStore, TokenStoreHooks
from .orchestrator import AcmeDirectory, AcmeOrchestrator, ProtocolError, ProtocolErrorKind
from .output import ErrorCode, Reporter, WarningCode


RenewalContext = collections.namedtuple('RenewalContext', ['domain', 'contact_email', 'directory', 'force_new_certificate',
                                                           'force_renew', 'certs_directory_path'])

TRUE_VALUES = ('1', 'true', 'yes', 'on')


def _script_version():
    try:
        return metadata.version('acmerenew')
    except metadata.PackageNotFoundError:
        return 'unknown'


class RenewalManager:
    """Decides whether the certificate needs renewing and renews it.

    Configuration comes from built-in defaults, then an optional YAML or JSON
    file, then environment variables, then command line options.
    """

    environment_overrides = (
        ('DOMAIN', 'settings', 'domain', str),
        ('EMAIL', 'account', 'email', str),
        ('STAGING', 'settings', 'staging', bool),
        ('NEW_CERT', 'settings', 'new_cert', bool),
        ('FORCE_RENEW', 'settings', 'force_renew', bool),
        ('CERTS_DIR', 'directories', 'certs', str),
    )

    def __init__(self, argv=None, environ=None):
        script_entry = sys.argv[0]
        self.script_dir = os.path.dirname(os.path.realpath(script_entry))
        self.script_name = 'acmerenew'
        self.script_version = _script_version()
        self.environ = os.environ if (environ is None) else environ

        argparser = argparse.ArgumentParser(description='ACME Certificate Renewal')
        argparser.add_argument('--version', action='version', version='%(prog)s ' + self.script_version)
        argparser.add_argument('-q', '--quiet',
                               action='store_true', dest='quiet', default=False,
                               help="Don't print status messages to stdout or warnings to stderr")
        argparser.add_argument('-v', '--verbose',
                               action='store_true', dest='verbose', default=False,
                               help='Print more detailed status messages to stdout')
        argparser.add_argument('-d', '--debug',
                               action='store_true', dest='debug', default=False,
                               help='Print detailed debugging information to stdout')
        argparser.add_argument('-D', '--detail',
                               action='store_true', dest='detail', default=False,
                               help='Print more detailed debugging information to stdout')
        argparser.add_argument('--color',
                               action='store_true', dest='color', default=False,
                               help='Colorize output')
        argparser.add_argument('--no-color',
                               action='store_true', dest='no_color', default=False,
                               help='Suppress colorized output')
        argparser.add_argument('-c', '--config',
                               dest='config_path', default=None, metavar='CONFIG_PATH',
                               help='Specify file path for config')
        argparser.add_argument('--domain',
                               dest='domain', default=None, metavar='DOMAIN',
                               help='Domain name to request the certificate for')
        argparser.add_argument('--email',
                               dest='email', default=None, metavar='EMAIL',
                               help='Contact email for the ACME account')
        argparser.add_argument('--staging',
                               action='store_true', dest='staging', default=None,
                               help="Use the Let's Encrypt staging directory")
        argparser.add_argument('-N', '--new',
                               action='store_true', dest='new_cert', default=None,
                               help='Request a new certificate, ignoring any existing one')
        argparser.add_argument('-R', '--renew',
                               action='store_true', dest='force_renew', default=None,
                               help='Renew certificate regardless of age')
        argparser.add_argument('--certs-dir',
                               dest='certs_dir', default=None, metavar='CERTS_DIR',
                               help='Directory to write certificate files to')
        argparser.add_argument('-p', '--port', type=int,
                               dest='port', default=None, metavar='PORT',
                               help='Port for the HTTP-01 challenge server')
        argparser.add_argument('--show-config',
                               action='store_true', dest='show_config', default=False,
                               help='Display configuration settings')
        self.args = argparser.parse_args(argv)

        if (self.args.debug):
            sys.excepthook = debug_hook

        self.reporter = Reporter(quiet=self.args.quiet, verbose=self.args.verbose, debug=self.args.debug, detail=self.args.detail,
                                 color=self.args.color, no_color=self.args.no_color)

        self._config_defaults = {
            'account': {
                'email': 'admin@example.com',
            },
            'settings': {
                'domain': None,
                'staging': False,
                'new_cert': False,
                'force_renew': False,
                'log_level': 'normal',
                'color_output': True,
                'warning_exit_code': False,
                'renewal_days': 30,
                'key_type': 'rsa',
                'key_size': 2048,
                'key_curve': 'secp384r1',
                'http_challenge_port': 80,
                'http_challenge_address': '',
                'authorization_delay': 5,
                'max_authorization_attempts': 30,
                'cert_poll_time': 90,
                'acme_user_agent': 'acmerenew',
            },
            'directories': {
                'certs': 'certs',
                'account': None,
                'log': None,
            },
            'file_names': {
                'log': self.script_name + '.log',
                'account_key': 'account_key.json',
            },
            'hooks': {
                'certificates_saved': None,
            },
        }
        self.config = collections.OrderedDict()
        self.config_file_path = None

    @property
    def error_code(self):
        return self.reporter.error_code

    @property
    def exit_code(self) -> int:
        if (ErrorCode.NONE != self.reporter.error_code):
            return self.reporter.error_code.value
        if ((WarningCode.NONE != self.reporter.warning_code) and self._setting('warning_exit_code')):
            return self.reporter.warning_code.value
        return 0

    def _load_yaml(self, stream, object_pairs_hook=dict):
        class OrderedLoader(yaml.SafeLoader):
            pass

        def construct_mapping(loader, node):
            loader.flatten_mapping(node)
            return object_pairs_hook(loader.construct_pairs(node))

        OrderedLoader.add_constructor(yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG, construct_mapping)
        return yaml.load(stream, OrderedLoader)

    def _load_config_file(self, config_file_path):
        _, extension = os.path.splitext(config_file_path)
        try:
            self.reporter.detail('Reading config from ', config_file_path, '\n')
            with open(config_file_path) as config_file:
                if ('.json' == extension):
                    return json.load(config_file, object_pairs_hook=collections.OrderedDict)
                return self._load_yaml(config_file, object_pairs_hook=collections.OrderedDict) or collections.OrderedDict()
        except Exception as error:
            self.reporter.fatal('Error reading config file ', config_file_path, ': ', error, '\n', code=ErrorCode.CONFIG)

    def _find_configs(self, config_file_path):
        config_dir = os.path.dirname(config_file_path)
        file_paths = []
        for extension in ('.json', '.yaml', '.yml'):
            file_paths += glob.glob(os.path.join(config_dir, 'conf.d', '*' + extension))
        return file_paths

    def _merge_dicts(self, base, extra):
        if (not isinstance(base, dict)):
            base = collections.OrderedDict()
        for key, value in extra.items():
            if (isinstance(value, dict)):
                base[key] = self._merge_dicts(base.get(key), value)
            else:
                base[key] = value
        return base

    def _load_config(self, file_path, search_paths=()):
        required = (file_path is not None)
        file_path = os.path.expanduser(file_path or self.script_name)
        search_paths = [''] if (os.path.isabs(file_path)) else search_paths
        file_path, file_extension = os.path.splitext(file_path)
        extensions = ('.json', '.yaml', '.yml') if not file_extension else [file_extension]
        for search_path in search_paths:
            for extension in extensions:
                config_file_path = os.path.join(search_path, file_path) + extension
                if (os.path.isfile(config_file_path)):
                    config = self._load_config_file(config_file_path)
                    for file_path in sorted(self._find_configs(config_file_path)):
                        config = self._merge_dicts(config, self._load_config_file(file_path))
                    return (config, config_file_path)
        if (required):
            self.reporter.fatal('Config file ', file_path, file_extension, ' not found\n', code=ErrorCode.CONFIG)
        return (collections.OrderedDict(), None)

    def _config(self, section_name, key=None, default=None):
        return self.config.get(section_name, {}).get(key, default) if (key) else self.config.get(section_name, {})

    def _account(self, key):
        return self._config('account', key)

    def _setting(self, key):
        return self._config('settings', key)

    def _setting_int(self, key):
        try:
            return int(self._setting(key))
        except Exception:
            return 0

    def _directory(self, file_type):
        directory = self._config('directories', file_type, '')
        if (directory and self.config_file_path):
            return os.path.normpath(os.path.join(os.path.dirname(self.config_file_path), os.path.expanduser(directory)))
        return os.path.normpath(os.path.expanduser(directory)) if (directory) else directory

    def _file_path(self, file_type, file_name_type=None):
        directory = self._directory(file_type)
        if (directory):
            return os.path.join(directory, self._config('file_names', file_name_type or file_type, ''))
        return None

    def _flag(self, value):
        if (isinstance(value, str)):
            return (value.strip().lower() in TRUE_VALUES)
        return bool(value)

    def _apply_overrides(self):
        for variable, section_name, key, value_type in self.environment_overrides:
            if (variable in self.environ):
                value = self.environ[variable]
                self.config[section_name][key] = self._flag(value) if (bool == value_type) else value
        arg_overrides = (
            ('domain', 'settings', 'domain'),
            ('email', 'account', 'email'),
            ('staging', 'settings', 'staging'),
            ('new_cert', 'settings', 'new_cert'),
            ('force_renew', 'settings', 'force_renew'),
            ('certs_dir', 'directories', 'certs'),
            ('port', 'settings', 'http_challenge_port'),
        )
        for arg_name, section_name, key in arg_overrides:
            value = getattr(self.args, arg_name)
            if (value is not None):
                self.config[section_name][key] = value

    def _validate_config(self):
        self.config, self.config_file_path = self._load_config(self.args.config_path,
                                                               ('.', os.path.join('/etc', self.script_name), self.script_dir))
        for section_name, default_section in self._config_defaults.items():
            if (section_name not in self.config):
                self.config[section_name] = collections.OrderedDict(default_section)
            else:
                for key, value in default_section.items():
                    if (key not in self.config[section_name]):
                        self.config[section_name][key] = value
        self._apply_overrides()

        self.reporter.configure(log_level=self._setting('log_level'), color_output=self._setting('color_output'),
                                log_file_path=self._file_path('log'))

        if (not self._setting('domain')):
            self.reporter.fatal('No domain configured, set DOMAIN or use --domain\n', code=ErrorCode.CONFIG)
        if (self._setting('key_type') not in ('rsa', 'ecdsa')):
            self.reporter.fatal('Unknown key type ', self._setting('key_type'), '\n', code=ErrorCode.CONFIG)
        for key in ('renewal_days', 'http_challenge_port', 'key_size'):
            if (not isinstance(self._setting(key), int)):
                self.reporter.fatal('Setting ', key, ' must be an integer\n', code=ErrorCode.CONFIG)

    def renewal_context(self) -> RenewalContext:
        return RenewalContext(domain=self._setting('domain'),
                              contact_email=self._account('email'),
                              directory=AcmeDirectory.select(self._flag(self._setting('staging'))),
                              force_new_certificate=self._flag(self._setting('new_cert')),
                              force_renew=self._flag(self._setting('force_renew')),
                              certs_directory_path=self._directory('certs'))

    def show_config(self):
        self.reporter.info('Configuration:\n')
        self.reporter.status(json.dumps(self.config, indent=4), '\n')

    def _print_banner(self, context):
        self.reporter.status('========================================\n',
                             "Let's Encrypt Certificate Renewal Tool\n",
                             '========================================\n',
                             'Domain: ', context.domain, '\n',
                             'Email: ', context.contact_email, '\n',
                             'Mode: ', context.directory.description, '\n',
                             'Action: ', 'Request NEW certificate' if (context.force_new_certificate) else 'Renew existing certificate', '\n',
                             'Certs directory: ', context.certs_directory_path, '\n',
                             '========================================\n\n')

    def challenge_responder(self, token_store):
        return ChallengeResponder(token_store, self.reporter, port=self._setting_int('http_challenge_port'),
                                  address=self._setting('http_challenge_address') or '')

    def orchestrator(self, context):
        return AcmeOrchestrator(context.directory.url, self.reporter,
                                key_type=self._setting('key_type'),
                                key_size=self._setting_int('key_size'),
                                key_curve=self._setting('key_curve'),
                                authorization_delay=self._setting_int('authorization_delay'),
                                max_authorization_attempts=self._setting_int('max_authorization_attempts'),
                                cert_poll_time=self._setting_int('cert_poll_time'),
                                account_key_path=self._file_path('account', 'account_key'),
                                user_agent=self._setting('acme_user_agent'))

    def _call_hook(self, hook_name, **kwargs):
        hook = self._config('hooks', hook_name)
        if (not hook):
            return
        args = {key: shlex.quote(value) for key, value in kwargs.items()}
        try:
            command = hook.format(**args)
        except KeyError as error:
            self.reporter.error('Invalid hook specification for ', hook_name, ', unknown key ', error, '\n', code=ErrorCode.HOOK)
            return
        try:
            self.reporter.debug('Calling hook ', hook_name, ': ', command, '\n')
            self.reporter.status(subprocess.check_output(command, stderr=subprocess.STDOUT, shell=True))
        except subprocess.CalledProcessError as error:
            self.reporter.error('Hook ', hook_name, ' returned error, code: ', error.returncode, '\n',
                                self.reporter.indent(error.output), '\n', code=ErrorCode.HOOK)
        except Exception as error:
            self.reporter.error('Failed to call hook ', hook_name, ': ', command, '\n', self.reporter.indent(error), '\n', code=ErrorCode.HOOK)

    def issue_certificate(self, context):
        token_store = ChallengeTokenStore()
        responder = self.challenge_responder(token_store)
        try:
            responder.start()
        except PermissionError as error:
            self.reporter.fatal('Error: Port ', responder.port, ' requires root privileges. Run with sudo.\n',
                                self.reporter.indent(error), '\n', code=ErrorCode.PERMISSION)
        except OSError as error:
            self.reporter.fatal('Unable to start challenge server on port ', responder.port, '\n', self.reporter.indent(error), '\n',
                                code=ErrorCode.PERMISSION)
        with responder:
            try:
                return self.orchestrator(context).issue(context, TokenStoreHooks(token_store, self.reporter))
            except ProtocolError as error:
                message = ['\nError during certificate renewal:\n', str(error), '\n']
                if (error.hint):
                    message += ['\n', error.hint, '\n']
                self.reporter.fatal(*message,
                                    code=ErrorCode.RATE_LIMIT if (ProtocolErrorKind.RATE_LIMITED == error.kind) else ErrorCode.ACME)

    def run(self):
        self._validate_config()
        if (self.args.show_config):
            self.show_config()
            return
        context = self.renewal_context()
        self._print_banner(context)

        materializer = CertificateMaterializer(context.certs_directory_path, self.reporter)
        materializer.makedir()

        policy = ExpiryPolicy(self.reporter, renewal_days=self._setting_int('renewal_days'))
        if (not policy.check(materializer.file_path('certificate'), context.force_new_certificate, context.force_renew)):
            return

        bundle = self.issue_certificate(context)
        saved = materializer.save(bundle)

        self._call_hook('certificates_saved', domain=context.domain, certs_dir=context.certs_directory_path,
                        **{file_type: file_path for file_type, file_path in saved.items()})

        self.reporter.status('\n========================================\n',
                             'Certificate renewal completed successfully!\n',
                             '========================================\n')


def debug_hook(type, value, tb):
    if hasattr(sys, 'ps1') or not sys.stderr.isatty():
        # interactive mode or no tty, use the default hook
        sys.__excepthook__(type, value, tb)
    else:
        import traceback
        import pdb
        traceback.print_exception(type, value, tb)
        print()
        pdb.pm()

