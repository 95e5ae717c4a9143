from pydantic import BaseModel


class LoginRequest(BaseModel):
    email: str
    password: str


class AuthUser(BaseModel):
    id: str
    fullName: str
    email: str
    role: str
    phone: str | None = None


class AuthResponse(BaseModel):
    accessToken: str
    tokenType: str = "bearer"
    user: AuthUser
