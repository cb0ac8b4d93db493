"""acmerenew module."""

import sys

from .acmerenew import RenewalContext, RenewalManager
from .output import AcmeError, ErrorCode

__all__ = ['RenewalManager', 'RenewalContext', 'AcmeError', 'ErrorCode', 'run']


def run(argv=None) -> int:
    exit_code = ErrorCode.EXCEPTION
    manager = None
    try:
        manager = RenewalManager(argv)
        manager.run()
    except AcmeError:
        pass
    if (manager):
        exit_code = manager.exit_code
    return exit_code


if __name__ == '__main__':      # called from the command line
    sys.exit(run())
