from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


class CertifyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    qr_data: Optional[Union[str, Dict[str, Any]]] = Field(default=None, alias="datosQR")


class CertifyResponse(BaseModel):
    hash: str
    record_id: Any
    handle_id: str
    attempt_id: str
    state: str
    message: str


class ConfirmRequest(BaseModel):
    """
    Names the confirmed transaction by ledger handle or by record id.

    ``loteId``/``txHash`` are accepted as aliases for ``record_id``/``tx_id``.
    """
    model_config = ConfigDict(populate_by_name=True)

    handle_id: Optional[str] = Field(default=None, min_length=1)
    record_id: Optional[int] = Field(default=None, alias="loteId")
    tx_id: str = Field(min_length=1, alias="txHash")

    @model_validator(mode="after")
    def exactly_one_target(self) -> "ConfirmRequest":
        if (self.handle_id is None) == (self.record_id is None):
            raise ValueError("give exactly one of handle_id or record_id")
        return self


class FailRequest(BaseModel):
    handle_id: str = Field(min_length=1)
    reason: str = "transaction rejected"


class NotificationResponse(BaseModel):
    success: bool
    state: str
    record_id: Any
    tx_id: Optional[str] = None
    tx_url: Optional[str] = None
    message: str
