"""Bearer-token retrieval for service accounts.

The preferred path asks the API server for a short-lived token
(``kubectl create token``). Clusters without the TokenRequest API fall back
to a legacy ``<sa>-token`` secret that the token controller fills in shortly
after it is created.
"""

from __future__ import annotations

import subprocess
import time
import typing as typ

from devcluster.k8s import EnsureOutcome, ensure_token_secret, read_secret_field
from devcluster.logging import get_logger, log_info, log_warning
from devcluster.validation import SecretDecodeError, TokenUnavailableError

if typ.TYPE_CHECKING:
    import collections.abc as cabc

logger = get_logger(__name__)

TOKEN_SETTLE_SECONDS = 2.0


def request_token(
    service_account: str, namespace: str, ttl: str, env: dict[str, str]
) -> str | None:
    """Request a token through the TokenRequest API.

    Returns
    -------
    str | None
        The token, or None when kubectl fails or prints nothing.

    """
    # S603/S607: kubectl via PATH is standard; names come from Config
    result = subprocess.run(  # noqa: S603
        [  # noqa: S607
            "kubectl",
            "create",
            "token",
            service_account,
            f"--namespace={namespace}",
            f"--duration={ttl}",
        ],
        capture_output=True,
        text=True,
        env=env,
        timeout=30,
    )
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def _token_from_secret(
    service_account: str,
    namespace: str,
    env: dict[str, str],
    *,
    settle_seconds: float,
    sleep: cabc.Callable[[float], None],
) -> str:
    secret = f"{service_account}-token"
    try:
        outcome = ensure_token_secret(service_account, namespace, env)
        if outcome is EnsureOutcome.CREATED:
            # The token controller populates data.token asynchronously.
            sleep(settle_seconds)
        return read_secret_field(secret, "token", namespace, env)
    except (
        subprocess.CalledProcessError,
        subprocess.TimeoutExpired,
        SecretDecodeError,
    ) as exc:
        log_warning(logger, "Could not use secret %s: %s", secret, exc)
        return ""


def get_token(
    service_account: str,
    namespace: str,
    ttl: str,
    env: dict[str, str],
    *,
    settle_seconds: float = TOKEN_SETTLE_SECONDS,
    sleep: cabc.Callable[[float], None] = time.sleep,
) -> str:
    """Return a bearer token for ``service_account``.

    Parameters
    ----------
    service_account : str
        Service account name.
    namespace : str
        Namespace of the service account.
    ttl : str
        Requested token lifetime, e.g. ``24h``.
    env : dict[str, str]
        Environment dict with KUBECONFIG set.
    settle_seconds : float, optional
        Single wait after creating the fallback secret.
    sleep : Callable[[float], None], optional
        Sleep function, replaceable in tests.

    Returns
    -------
    str
        A non-empty bearer token.

    Raises
    ------
    TokenUnavailableError
        If neither the TokenRequest API nor the fallback secret yields one.

    """
    token = request_token(service_account, namespace, ttl, env)
    if token:
        return token

    log_info(
        logger,
        "kubectl create token unavailable; falling back to %s-token secret",
        service_account,
    )
    token = _token_from_secret(
        service_account,
        namespace,
        env,
        settle_seconds=settle_seconds,
        sleep=sleep,
    )
    if token:
        return token

    msg = (
        f"Could not obtain a token for service account "
        f"'{namespace}/{service_account}'"
    )
    raise TokenUnavailableError(msg)
