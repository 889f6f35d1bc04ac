import logging
from typing import Annotated, List
from fastapi import APIRouter, HTTPException, status, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update

from app.core import schemas, models
from app.core.crypto import encode_connection_target
from app.core.database import get_db
from app.core.exceptions import StoreConnectionError
from app.core.query import connection
from app.core.security import get_current_user, validate_admin_role

router = APIRouter(prefix="/db-instances", tags=["DB Instances"])

db_dep = Annotated[AsyncSession, Depends(get_db)]
user_dep = Annotated[models.User, Depends(get_current_user)]
admin_dep = Annotated[models.User, Depends(validate_admin_role)]


async def _get_instance_or_404(instance_id: int, db: AsyncSession) -> models.DBInstance:
    instance = await db.get(models.DBInstance, instance_id)
    if instance is None:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "DB instance not found")
    return instance


async def _ensure_unique_name(name: str, db: AsyncSession, exclude_id: int = None):
    query = select(models.DBInstance.id).where(models.DBInstance.name == name)
    if exclude_id is not None:
        query = query.where(models.DBInstance.id != exclude_id)
    if (await db.execute(query)).first():
        raise HTTPException(
            status.HTTP_409_CONFLICT, f"DB instance '{name}' already exists"
        )


# Developers see active instances for the request form, admins may see all
@router.get("", response_model=List[schemas.DBInstanceResponse])
async def list_instances(
    current_user: user_dep, db: db_dep, active_only: bool = False
):
    query = select(models.DBInstance).order_by(models.DBInstance.name)
    if active_only or current_user.role != "admin":
        query = query.where(models.DBInstance.is_active.is_(True))
    result = await db.execute(query)
    return result.scalars().all()


@router.post(
    "",
    response_model=schemas.DBInstanceResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_instance(
    payload: schemas.DBInstanceCreate, admin: admin_dep, db: db_dep
):
    await _ensure_unique_name(payload.name, db)
    try:
        instance = models.DBInstance(
            name=payload.name,
            description=payload.description,
            database_name=payload.database_name,
            encoded_connection_target=encode_connection_target(
                payload.connection_string
            ),
            is_active=payload.is_active,
            created_by_id=admin.id,
        )
        db.add(instance)
        await db.commit()
        await db.refresh(instance)
        return instance
    except Exception as error:
        await db.rollback()
        logging.error(f"Failed to add DB instance: {error}")
        raise HTTPException(
            status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to add DB instance"
        )


# Checks an unsaved target from the admin form
@router.post("/test-connection", response_model=schemas.ConnectionTestResponse)
async def test_new_connection(payload: schemas.ConnectionTest, admin: admin_dep):
    try:
        collections = await connection.check_connection(
            payload.connection_string, payload.database_name
        )
    except StoreConnectionError as error:
        return {"success": False, "error": error.message, "kind": error.kind}
    return {"success": True, "collections": collections}


@router.get("/{instance_id}", response_model=schemas.DBInstanceResponse)
async def get_instance(instance_id: int, admin: admin_dep, db: db_dep):
    return await _get_instance_or_404(instance_id, db)


@router.post("/{instance_id}/test", response_model=schemas.ConnectionTestResponse)
async def test_instance(instance_id: int, admin: admin_dep, db: db_dep):
    instance = await _get_instance_or_404(instance_id, db)
    try:
        collections = await connection.check_instance_connection(instance)
    except StoreConnectionError as error:
        return {"success": False, "error": error.message, "kind": error.kind}
    return {"success": True, "collections": collections}


@router.patch("/{instance_id}", response_model=schemas.DBInstanceResponse)
async def update_instance(
    instance_id: int,
    changes: schemas.DBInstanceUpdate,
    admin: admin_dep,
    db: db_dep,
):
    instance = await _get_instance_or_404(instance_id, db)

    update_data = changes.model_dump(exclude_unset=True)
    if update_data.get("name"):
        await _ensure_unique_name(update_data["name"], db, exclude_id=instance_id)

    connection_string = update_data.pop("connection_string", None)
    if connection_string:
        instance.encoded_connection_target = encode_connection_target(connection_string)

    for key, value in update_data.items():
        if value is not None:
            setattr(instance, key, value)

    try:
        await db.commit()
        await db.refresh(instance)
        return instance
    except Exception as error:
        await db.rollback()
        logging.error(f"Failed to update DB instance {instance_id}: {error}")
        raise HTTPException(status.HTTP_500_INTERNAL_SERVER_ERROR, "Update failed")


# Requests keep their db_instance_name after the instance is gone
@router.delete("/{instance_id}", status_code=status.HTTP_200_OK)
async def delete_instance(instance_id: int, admin: admin_dep, db: db_dep):
    instance = await _get_instance_or_404(instance_id, db)
    try:
        # Detach requests explicitly, not every backend enforces ON DELETE
        await db.execute(
            update(models.AccessRequest)
            .where(models.AccessRequest.db_instance_id == instance_id)
            .values(db_instance_id=None)
        )
        await db.delete(instance)
        await db.commit()
        return {"message": f"Deleted DB instance {instance_id}"}
    except Exception as error:
        await db.rollback()
        logging.error(f"Failed to delete DB instance {instance_id}: {error}")
        raise HTTPException(
            status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to delete DB instance"
        )
