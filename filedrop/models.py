from datetime import datetime
from pydantic import BaseModel


class StoredFile(BaseModel):
    name: str
    size: int
    modified: datetime
