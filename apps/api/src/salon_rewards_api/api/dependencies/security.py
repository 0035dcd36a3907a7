from fastapi import Header, HTTPException, status

from salon_rewards_api.core.settings import settings


def _authorization_secret(authorization: str) -> str:
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() == "bearer":
        return token.strip()
    return authorization.strip()


async def require_cron_secret(
    authorization: str = Header("", alias="Authorization"),
    x_cron_secret: str = Header("", alias="x-cron-secret"),
    x_cron_key: str = Header("", alias="x-cron-key"),
) -> None:
    """Guard cron-triggered endpoints; open when no cron secret is configured."""

    if not settings.cron_secret:
        return

    candidates = (_authorization_secret(authorization), x_cron_secret, x_cron_key)
    if settings.cron_secret not in candidates:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid cron secret",
        )
