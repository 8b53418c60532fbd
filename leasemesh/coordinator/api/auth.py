import hmac
import logging

from fastapi import Header, HTTPException, Request, status

logger = logging.getLogger("coordinator")

SECRET_HEADER = "X-LeaseMesh-Secret"


def require_worker_secret(
    request: Request,
    presented: str | None = Header(default=None, alias=SECRET_HEADER),
) -> None:
    """Guard the lease API with the secret held in ``app.state.worker_secret``.

    An empty secret leaves the API open, which is how single-host setups run.
    """

    expected: str = getattr(request.app.state, "worker_secret", "")
    if not expected:
        return

    if presented is None or not hmac.compare_digest(
        presented.encode(), expected.encode()
    ):
        logger.warning(
            "worker_secret_rejected",
            extra={"path": request.url.path, "header_present": presented is not None},
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing shared secret",
        )
