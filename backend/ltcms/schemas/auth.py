"""Pydantic schemas for authentication API."""

from pydantic import BaseModel, Field


class LoginRequest(BaseModel):
    """Request for login.

    Length and character rules are enforced by the auth service so that
    violations come back as 400 with a readable message.
    """

    username: str
    password: str


class UserResponse(BaseModel):
    """Public view of an account."""

    username: str
    role: str = Field(description="Either 'admin' or 'user'")


class LoginResponse(BaseModel):
    """Response after successful login.

    The token is also set as an HttpOnly cookie; it is returned in the body
    for clients that send it in the Authorization header instead.
    """

    token: str
    user: UserResponse


class ErrorResponse(BaseModel):
    error: str
