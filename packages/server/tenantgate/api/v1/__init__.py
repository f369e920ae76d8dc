"""
API v1 Router

Org-scoped endpoints are prefixed with /orgs/{org_id}.
"""

from fastapi import APIRouter

from . import admin, auth, context, members, organisations, projects
from .invitations import router_global as invitations_global_router
from .invitations import router_scoped as invitations_scoped_router

router = APIRouter()

router.include_router(auth.router, prefix="/auth", tags=["Authentication"])
router.include_router(context.router, prefix="/context", tags=["Tenant Context"])
router.include_router(organisations.router, prefix="/orgs", tags=["Organisations"])
router.include_router(members.router, prefix="/orgs/{org_id}/members", tags=["Members"])
router.include_router(
    invitations_scoped_router, prefix="/orgs/{org_id}/invitations", tags=["Invitations"]
)
router.include_router(invitations_global_router, tags=["Invitations"])
router.include_router(projects.router, prefix="/orgs/{org_id}/projects", tags=["Projects"])
router.include_router(admin.router, tags=["Administration"])


@router.get("/", tags=["API"])
async def api_root():
    """API root: version and available endpoints."""
    return {
        "api": "v1",
        "version": "0.1.0",
        "endpoints": [
            "/auth",
            "/context",
            "/orgs",
            "/orgs/{org_id}/members",
            "/orgs/{org_id}/invitations",
            "/orgs/{org_id}/projects",
            "/authz/decide",
        ],
    }
