# rxflow/schemas/common.py
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """
    JSON uses camelCase (orderId, paymentVerified); Python uses snake_case.
    Either form is accepted on input.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class ReasonRequest(CamelModel):
    reason: str | None = None
