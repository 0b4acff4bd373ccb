from typing import Optional

from fastapi import APIRouter, Depends, BackgroundTasks, Body, Request
from sqlalchemy.orm import Session

from ..auth.security import get_identity, parse_path_id, parse_body_id, client_ip
from ..db import get_db
from ..errors import NotFound, InvalidInput
from ..models.models import WorkOrder
from ..services import work_orders as svc
from ..services.access import Action, AccessContext, enforce
from ..services.identity import Identity
from ..services.notifications import dispatch_events


router = APIRouter(prefix="/work-orders", tags=["work-orders"])


def _work_order_for(db: Session, identity: Identity, work_order_id: str, action: Action) -> WorkOrder:
    # Access is decided before existence is revealed
    wid = parse_path_id(work_order_id)
    wo = svc.get_work_order(db, wid)
    enforce(identity, action, svc.work_order_context(identity, wo))
    if not wo:
        raise NotFound("Work order not found")
    return wo


def _dispatch(background: BackgroundTasks, events) -> None:
    if events:
        background.add_task(dispatch_events, events)


def _body_id(query_value: Optional[str], payload: Optional[dict], *keys: str):
    if query_value:
        return parse_body_id(query_value, keys[0])
    payload = payload or {}
    for k in keys:
        if payload.get(k):
            return parse_body_id(payload[k], keys[0])
    raise InvalidInput(f"{keys[0]} is required")


@router.get("")
def list_work_orders(
    status: Optional[str] = None,
    priority: Optional[str] = None,
    service_type: Optional[str] = None,
    assigned_to: Optional[str] = None,
    project_id: Optional[str] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    search: Optional[str] = None,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_identity),
):
    enforce(identity, Action.WORK_ORDER_LIST)
    filters = {
        "status": status,
        "priority": priority,
        "service_type": service_type,
        "assigned_to": assigned_to,
        "project_id": project_id,
        "date_from": date_from,
        "date_to": date_to,
        "search": search,
    }
    rows = svc.search_work_orders(db, identity, filters)
    return {"workOrders": [svc.serialize_work_order(wo) for wo in rows]}


@router.post("")
def create_work_order(
    payload: dict,
    background: BackgroundTasks,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_identity),
):
    assigned_to = svc.resolve_creation_assignee(identity, payload)
    enforce(identity, Action.WORK_ORDER_CREATE, AccessContext(assigned=assigned_to == identity.user_id))
    wo, events = svc.create_work_order(db, identity, payload, assigned_to=assigned_to)
    _dispatch(background, events)
    return {"workOrder": svc.serialize_work_order(wo)}


@router.get("/generate-number")
def generate_number(db: Session = Depends(get_db), identity: Identity = Depends(get_identity)):
    enforce(identity, Action.WORK_ORDER_LIST)
    return {"workOrderNumber": svc.generate_work_order_number(db)}


@router.get("/stats")
def stats(db: Session = Depends(get_db), identity: Identity = Depends(get_identity)):
    enforce(identity, Action.WORK_ORDER_STATS)
    return {"stats": svc.work_order_stats(db)}


@router.get("/{work_order_id}")
def get_work_order(work_order_id: str, db: Session = Depends(get_db), identity: Identity = Depends(get_identity)):
    wo = _work_order_for(db, identity, work_order_id, Action.WORK_ORDER_VIEW)
    materials = svc.list_materials(db, wo.id)
    return {
        "workOrder": svc.serialize_work_order(wo),
        "materials": [svc.serialize_material(m) for m in materials],
        "materialsTotal": svc.materials_total_cost(materials),
        "signatures": [svc.serialize_signature(s) for s in svc.list_signatures(db, wo.id)],
    }


@router.patch("/{work_order_id}")
def update_work_order(
    work_order_id: str,
    payload: dict,
    background: BackgroundTasks,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_identity),
):
    wo = _work_order_for(db, identity, work_order_id, Action.WORK_ORDER_UPDATE)
    wo, events = svc.update_work_order(db, identity, wo, payload)
    _dispatch(background, events)
    return {"workOrder": svc.serialize_work_order(wo)}


@router.delete("/{work_order_id}")
def delete_work_order(work_order_id: str, db: Session = Depends(get_db), identity: Identity = Depends(get_identity)):
    wo = _work_order_for(db, identity, work_order_id, Action.WORK_ORDER_DELETE)
    svc.delete_work_order(db, identity, wo)
    return {"success": True}


# ----- Materials -----

@router.get("/{work_order_id}/materials")
def list_materials(work_order_id: str, db: Session = Depends(get_db), identity: Identity = Depends(get_identity)):
    wo = _work_order_for(db, identity, work_order_id, Action.WORK_ORDER_MATERIALS)
    materials = svc.list_materials(db, wo.id)
    return {
        "materials": [svc.serialize_material(m) for m in materials],
        "totalCost": svc.materials_total_cost(materials),
    }


@router.post("/{work_order_id}/materials")
def add_material(work_order_id: str, payload: dict, db: Session = Depends(get_db), identity: Identity = Depends(get_identity)):
    wo = _work_order_for(db, identity, work_order_id, Action.WORK_ORDER_MATERIALS)
    return {"material": svc.serialize_material(svc.add_material(db, wo, payload))}


@router.delete("/{work_order_id}/materials")
def delete_material(
    work_order_id: str,
    material_id: Optional[str] = None,
    payload: Optional[dict] = Body(None),
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_identity),
):
    wo = _work_order_for(db, identity, work_order_id, Action.WORK_ORDER_MATERIALS)
    if not svc.delete_material(db, wo, _body_id(material_id, payload, "material_id", "materialId")):
        raise NotFound("Material not found")
    return {"success": True}


# ----- Signatures -----

@router.get("/{work_order_id}/signatures")
def list_signatures(work_order_id: str, db: Session = Depends(get_db), identity: Identity = Depends(get_identity)):
    wo = _work_order_for(db, identity, work_order_id, Action.SIGNATURE_VIEW)
    return {"signatures": [svc.serialize_signature(s) for s in svc.list_signatures(db, wo.id)]}


@router.post("/{work_order_id}/signatures")
def add_signature(
    work_order_id: str,
    payload: dict,
    request: Request,
    background: BackgroundTasks,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_identity),
):
    wo = _work_order_for(db, identity, work_order_id, Action.SIGNATURE_ADD)
    sig, events = svc.add_signature(db, identity, wo, payload, ip_address=client_ip(request))
    _dispatch(background, events)
    return {"signature": svc.serialize_signature(sig)}


# ----- Customer invitations -----

@router.get("/{work_order_id}/invitations")
def list_invitations(work_order_id: str, db: Session = Depends(get_db), identity: Identity = Depends(get_identity)):
    wo = _work_order_for(db, identity, work_order_id, Action.WORK_ORDER_INVITATIONS)
    return {"invitations": [svc.serialize_invitation(i) for i in svc.list_invitations(db, wo.id)]}


@router.post("/{work_order_id}/invitations")
def create_invitation(
    work_order_id: str,
    payload: dict,
    background: BackgroundTasks,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_identity),
):
    wo = _work_order_for(db, identity, work_order_id, Action.WORK_ORDER_INVITATIONS)
    inv, events = svc.create_invitation(db, identity, wo, payload)
    _dispatch(background, events)
    return {"invitation": svc.serialize_invitation(inv), "message": "Invitation sent successfully"}


@router.delete("/{work_order_id}/invitations")
def delete_invitation(
    work_order_id: str,
    invitation_id: Optional[str] = None,
    payload: Optional[dict] = Body(None),
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_identity),
):
    wo = _work_order_for(db, identity, work_order_id, Action.WORK_ORDER_INVITATION_DELETE)
    if not svc.delete_invitation(db, wo, _body_id(invitation_id, payload, "invitation_id", "invitationId")):
        raise NotFound("Invitation not found")
    return {"success": True}
