from typing import Annotated, Literal

from pydantic import BaseModel, Field, TypeAdapter


class GmailConfig(BaseModel):
    kind: Literal["gmail"] = "gmail"
    scopes: list[str] = Field(default_factory=lambda: ["https://www.googleapis.com/auth/gmail.modify"])
    label_ids: list[str] = Field(default_factory=lambda: ["INBOX"])


class OutlookConfig(BaseModel):
    kind: Literal["outlook"] = "outlook"
    folder: str = "inbox"


class IMAPConfig(BaseModel):
    kind: Literal["imap"] = "imap"
    imap_host: str
    imap_port: int = 993
    smtp_host: str
    smtp_port: int = 465
    folder: str = "INBOX"


ProviderConfig = Annotated[GmailConfig | OutlookConfig | IMAPConfig, Field(discriminator="kind")]

provider_config_adapter: TypeAdapter[GmailConfig | OutlookConfig | IMAPConfig] = TypeAdapter(ProviderConfig)
