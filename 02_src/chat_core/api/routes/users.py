"""User sign-in route: upsert by email and issue a bearer token."""

from pydantic import BaseModel, Field
from fastapi import APIRouter, HTTPException

from ...app import Application
from ...errors import DuplicateNameError, ValidationFailure
from ...schemas import UserOut


class SignInRequest(BaseModel):
    """Request model for sign-in."""

    email: str = Field(min_length=3)
    name: str = ""


def create_users_router(app: Application) -> APIRouter:
    """Create users router."""
    router = APIRouter(prefix="/api", tags=["users"])

    @router.post("/users")
    async def sign_in(request: SignInRequest) -> dict:
        """Create or refresh a user and return a signed token."""
        try:
            user = await app.users.upsert_user(request.email, request.name)
        except ValidationFailure as e:
            raise HTTPException(status_code=400, detail=e.message)
        except DuplicateNameError as e:
            raise HTTPException(status_code=409, detail=e.message)

        return {
            "user": UserOut.model_validate(user).dump(),
            "token": app.verifier.issue(user),
        }

    return router
