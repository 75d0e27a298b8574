from fastapi import Header, HTTPException, Request
from typing import Optional


async def get_api_key(request: Request, x_api_key: Optional[str] = Header(None, alias="x-api-key")):
    """
    Validate the x-api-key header against HONEYPOT_API_KEY.
    An empty configured key disables the check.
    """
    expected = request.app.state.settings.api_key
    if expected and x_api_key != expected:
        raise HTTPException(status_code=403, detail="Invalid API Key")
    return x_api_key
