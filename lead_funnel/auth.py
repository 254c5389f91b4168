from fastapi import Header, HTTPException

from . import config


async def get_admin_api_key(x_api_key: str = Header(..., alias="x-api-key")):
    """
    Validate the admin key from the x-api-key header.
    Admin endpoints stay closed while FUNNEL_ADMIN_API_KEY is not set.
    """
    if not config.FUNNEL_ADMIN_API_KEY or x_api_key != config.FUNNEL_ADMIN_API_KEY:
        raise HTTPException(status_code=403, detail="Invalid API Key")
    return x_api_key
