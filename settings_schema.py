from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from errors import ValidationError


class SettingsSchema(BaseModel):
    """Validated contents of ``settings.yaml``.

    ``timezone`` is the IANA zone used to assign sessions to calendar days
    and weeks. Training logged in Japan should set ``Asia/Tokyo`` so that an
    evening session does not land on the previous UTC day.
    """

    model_config = ConfigDict(extra="ignore")

    db_path: str = "pullup.db"
    timezone: str = "UTC"
    week_start: str = "monday"
    weekly_summary_weeks: int = Field(4, ge=1, le=52)
    rest_adjust_step: int = Field(15, ge=1, le=120)
    default_sets: int = Field(7, ge=1, le=20)
    default_target_total: int = Field(20, ge=1, le=200)
    default_rest_sec: int = Field(90, ge=10, le=600)
    api_token: Optional[str] = None


def validate_settings(data: dict) -> SettingsSchema:
    try:
        return SettingsSchema(**data)
    except PydanticValidationError as e:
        raise ValidationError(str(e))
