import enum
import os
import sys


class ErrorCode(enum.IntEnum):
    NONE = 0
    GENERAL = 1
    FATAL = 2
    EXCEPTION = 3
    CONFIG = 4
    PERMISSION = 5
    HOOK = 7
    ACME = 8
    AUTH = 9
    KEY = 10
    RATE_LIMIT = 13


class WarningCode(enum.IntEnum):
    NONE = 0
    GENERAL = 100
    CONFIG = 101
    KEY = 102
    AUTH = 104
    CLEANUP = 108


class AcmeError(Exception):
    pass


class Reporter:
    """Leveled console output with optional colorization and log file.

    ``status`` is always shown unless quiet, ``info`` needs verbose, ``debug``
    needs debug and ``detail`` needs detail. Errors and warnings go to stderr
    and record a code used for the process exit status.
    """

    _color_codes = {
        'black': 30,
        'red': 31,
        'green': 32,
        'yellow': 33,
        'blue': 34,
        'magenta': 35,
        'cyan': 36,
        'light gray': 37,
        'dark gray': 90,
        'light red': 91,
        'light green': 92,
        'light yellow': 93,
        'light blue': 94,
        'light magenta': 95,
        'light cyan': 96,
        'white': 97
    }
    _style_codes = {
        'normal': 0,
        'bold': 1,
        'bright': 1,
        'dim': 2,
        'underline': 4,
        'underlined': 4,
        'blink': 5,
        'reverse': 7,
        'invert': 7,
        'hidden': 8
    }

    def __init__(self, *, quiet=False, verbose=False, debug=False, detail=False, color=False, no_color=False,
                 stdout=None, stderr=None):
        self.quiet = quiet
        self.verbose = verbose
        self.debug_output = debug
        self.detail_output = detail
        self.color = color
        self.no_color = no_color
        self.stdout = stdout or sys.stdout
        self.stderr = stderr or sys.stderr
        self.color_output = True
        self.log_level = None
        self.log_file_path = None
        self.error_code = ErrorCode.NONE
        self.warning_code = WarningCode.NONE

    def configure(self, *, log_level=None, color_output=True, log_file_path=None):
        self.log_level = log_level
        self.color_output = color_output
        self.log_file_path = log_file_path

    def message(self, *args):
        message = ''
        for arg in args:
            message += str(arg, 'utf-8', 'replace') if isinstance(arg, bytes) else str(arg)
        return message

    def indent(self, *args):
        return '\n'.join([('    ' + line) for line in self.message(*args).split('\n')])

    def _colorize(self, stream, color, style, message):
        isatty = getattr(stream, 'isatty', None)
        if (isatty and isatty() and (self.color or self.color_output) and (not self.no_color)):
            stream.write('\033[{style};{color}m{message}\033[0m'.format(color=self._color_codes[color], style=self._style_codes[style], message=message))
        else:
            stream.write(message)

    def status(self, *args):
        if (not self.quiet):
            self.stdout.write(self.message(*args))
        if (self.log_level in ['normal', 'verbose', 'debug', 'detail']):
            self.log(*args)

    def info(self, *args, color='yellow', style='normal'):
        if ((self.verbose or self.debug_output or self.detail_output) and not self.quiet):
            self._colorize(self.stdout, color, style, self.message(*args))
        if (self.log_level in ['verbose', 'debug', 'detail']):
            self.log(*args)

    def debug(self, *args, color='dark gray', style='normal'):
        if ((self.debug_output or self.detail_output) and not self.quiet):
            self._colorize(self.stdout, color, style, self.message(*args))
        if (self.log_level in ['debug', 'detail']):
            self.log(*args)

    def detail(self, *args, color='light gray', style='normal'):
        if (self.detail_output and not self.quiet):
            self._colorize(self.stdout, color, style, self.message(*args))
        if (self.log_level == 'detail'):
            self.log(*args)

    def warn(self, *args, code: WarningCode = None, color='red', style='normal'):
        self.warning_code = code if (code is not None) else WarningCode.GENERAL
        if (not self.quiet):
            self._colorize(self.stderr, color, style, self.message(*args))
        if (self.log_level in ['normal', 'verbose', 'debug', 'detail']):
            self.log(*args)

    def error(self, *args, code: ErrorCode = None, color='red', style='bold'):
        self.error_code = code if (code is not None) else ErrorCode.GENERAL
        message = self.message(*args)
        self._colorize(self.stderr, color, style, message)
        self.log(message)

    def fatal(self, *args, code: ErrorCode = None, color='red', style='bold'):
        self.error_code = code if (code is not None) else ErrorCode.FATAL
        message = self.message(*args)
        self._colorize(self.stderr, color, style, message)
        self.log(message)
        raise AcmeError(message)

    def log(self, *args):
        if (self.log_file_path and self.log_level):
            try:
                log_dir = os.path.dirname(self.log_file_path)
                if (log_dir and not os.path.isdir(log_dir)):
                    os.makedirs(log_dir)
                with open(self.log_file_path, 'a+', opener=lambda path, flags: os.open(path, flags, mode=0o640)) as log_file:
                    log_file.write(self.message(*args))
            except Exception:
                self.stderr.write('Unable to write to log file ' + self.log_file_path + '\n')
