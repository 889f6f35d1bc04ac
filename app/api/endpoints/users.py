import logging
from typing import Annotated, List
from fastapi import APIRouter, HTTPException, status, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from app.core import schemas, models
from app.core.config import settings
from app.core.database import get_db
from app.core.security import get_current_user, hash_password, validate_admin_role

router = APIRouter(prefix="/profile", tags=["Users"])

db_dep = Annotated[AsyncSession, Depends(get_db)]
user_dep = Annotated[models.User, Depends(get_current_user)]
admin_dep = Annotated[models.User, Depends(validate_admin_role)]


async def _get_user_or_404(user_id: int, db: AsyncSession) -> models.User:
    query = select(models.User).where(models.User.id == user_id)
    result = await db.execute(query)
    db_user = result.scalars().first()

    if not db_user:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="User not found"
        )
    return db_user


async def _check_team_lead(team_lead_id: int, db: AsyncSession):
    lead = await _get_user_or_404(team_lead_id, db)
    if lead.role not in ("team_lead", "admin"):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"User {team_lead_id} is not a team lead",
        )


# Add user
@router.post(
    "/signup",
    response_model=schemas.UserResponse,
    status_code=status.HTTP_201_CREATED,
)
async def sign_up(user: schemas.CreateUser, db: db_dep):
    # Validate whether a user already exists
    query = select(models.User).where(models.User.email == user.email)
    result = await db.execute(query)
    db_user = result.scalars().first()

    if db_user:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="User already exists"
        )

    if user.team_lead_id is not None:
        await _check_team_lead(user.team_lead_id, db)

    # Everyone starts as a developer unless listed as a bootstrap admin
    role = "admin" if user.email in settings.BOOTSTRAP_ADMIN_EMAILS else "developer"

    # Hash the password and add new user to the db
    try:
        hashed_pwd = hash_password(user.password)
        new_user = models.User(
            email=user.email,
            password=hashed_pwd,
            role=role,
            team_lead_id=user.team_lead_id,
        )
        db.add(new_user)
        await db.commit()
        await db.refresh(new_user)
        return new_user
    except Exception as error:
        await db.rollback()
        logging.error(f"Failed to add a new user: {error}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to sign up",
        )


@router.get("/me", response_model=schemas.UserResponse)
async def get_me(current_user: user_dep):
    return current_user


# Reviewers a developer can pick when submitting a request
@router.get("/team-leads", response_model=List[schemas.UserResponse])
async def get_team_leads(current_user: user_dep, db: db_dep):
    query = (
        select(models.User)
        .where(models.User.role.in_(("team_lead", "admin")))
        .order_by(models.User.email)
    )
    result = await db.execute(query)
    return result.scalars().all()


# Get user
@router.get("/{user_id}", response_model=schemas.UserResponse)
async def get_user(user_id: int, current_user: user_dep, db: db_dep):
    return await _get_user_or_404(user_id, db)


# Change role or default team lead
@router.patch("/{user_id}", response_model=schemas.UserResponse)
async def update_user(
    user_id: int,
    changes: schemas.UserUpdate,
    admin: admin_dep,
    db: db_dep,
):
    db_user = await _get_user_or_404(user_id, db)

    update_data = changes.model_dump(exclude_unset=True)
    if update_data.get("team_lead_id") is not None:
        if update_data["team_lead_id"] == user_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="A user cannot be their own team lead",
            )
        await _check_team_lead(update_data["team_lead_id"], db)
    if "role" in update_data and update_data["role"] is not None:
        update_data["role"] = update_data["role"].value

    for key, value in update_data.items():
        setattr(db_user, key, value)

    try:
        await db.commit()
        await db.refresh(db_user)
        return db_user
    except Exception as error:
        await db.rollback()
        logging.error(f"Failed to update user {user_id}: {error}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Update failed"
        )


@router.delete("/{user_id}")
async def delete_user(
    user_id: int,
    admin: admin_dep,
    db: db_dep,
):
    # Prevent Admin Suicide :D
    if admin.id == user_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="You cannot delete your own admin account.",
        )

    user_to_delete = await _get_user_or_404(user_id, db)

    # Perform Delete
    try:
        await db.delete(user_to_delete)
        await db.commit()
        return {"Result": "Successfully deleted a user"}
    except Exception as error:
        await db.rollback()
        logging.error(f"Failed to delete user {user_id}: {error}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to delete a user",
        )
