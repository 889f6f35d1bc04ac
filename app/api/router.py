from fastapi import APIRouter
from app.api.endpoints import auth, users, db_instances, requests, notifications

api_router = APIRouter()

# Combine all sub-routers into one
api_router.include_router(auth.router)
api_router.include_router(users.router)
api_router.include_router(db_instances.router)
api_router.include_router(requests.router)
api_router.include_router(notifications.router)
