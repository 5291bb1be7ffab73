"""Error taxonomy for provisioning and validation.

Already-exists (409) is swallowed by the provisioner. Not-found (404) and
not-ready conditions drive poll loops. Everything else is fatal.
"""

import asyncio
from typing import Optional

from kubernetes.client.rest import ApiException


class ConnectivityError(Exception):
    """Base class for all connectivity test errors"""


class ProvisionError(ConnectivityError):
    """Creating or looking up a topology object failed"""


class NotReadyError(ConnectivityError):
    """An object exists but has not converged yet"""


class UnexpectedCountError(ConnectivityError):
    """Discovery found a different number of objects than the topology defines"""


class NoClientPodError(ConnectivityError):
    """A probe needed a client pod and none were discovered"""


class ExecError(ConnectivityError):
    """A command run inside a pod exited non-zero"""

    def __init__(self, command, returncode: Optional[int], stdout: str = '', stderr: str = ''):
        self.command = list(command)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(
            f"command {' '.join(self.command)!r} exited with code {returncode}: {stderr.strip() or stdout.strip()}"
        )


class WaitTimeoutError(ConnectivityError):
    """A bounded wait reached its deadline; carries the last probe failure"""

    def __init__(self, description: str, last_error: Optional[BaseException]):
        self.description = description
        self.last_error = last_error
        super().__init__(f"timeout reached waiting for {description} (last error: {_describe(last_error)})")


def _describe(err: Optional[BaseException]) -> str:
    if err is None:
        return "no attempt completed"
    if isinstance(err, asyncio.TimeoutError) and not str(err):
        return "attempt did not finish before the deadline"
    return str(err)


def is_not_found(err: BaseException) -> bool:
    return isinstance(err, ApiException) and err.status == 404


def is_already_exists(err: BaseException) -> bool:
    return isinstance(err, ApiException) and err.status == 409


def is_retryable(err: BaseException) -> bool:
    """Whether a probe failure should be retried until the deadline"""
    if isinstance(err, (NotReadyError, ExecError, asyncio.TimeoutError)):
        return True
    if isinstance(err, ApiException):
        # status 0 is a transport failure raised by the exec websocket
        return not err.status or err.status == 404 or err.status == 429 or err.status >= 500
    return False
