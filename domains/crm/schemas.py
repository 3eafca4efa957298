from typing import Optional

from pydantic import BaseModel


class LeadPayload(BaseModel):
    # email is checked by the route so a missing one reads "Missing email"
    email: Optional[str] = None
    name: Optional[str] = None
