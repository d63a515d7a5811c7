from typing import Annotated

from pydantic import Field

# Ids issued by the auth/catalog layers; only their format is checked here
ExternalId = Annotated[str, Field(min_length=1, max_length=64, pattern=r"^[A-Za-z0-9_\-:.]+$")]
