from pydantic import BaseModel, Field, field_validator


class AdminLoginRequest(BaseModel):
    password: str | None = None


class AdminLoginResponse(BaseModel):
    success: bool = True
    token: str
    expiresAt: str


class AddCreditsRequest(BaseModel):
    userId: str = Field(min_length=1)
    amount: int = Field(gt=0, le=100000)

    @field_validator("userId")
    @classmethod
    def strip_user_id(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("userId must not be blank")
        return v
