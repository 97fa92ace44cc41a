from __future__ import annotations

from dataclasses import asdict
from typing import Any

import pydantic
from fastapi import FastAPI, HTTPException, Query, Request, Response

from dre import db
from dre.api_models import KINDS, CancelResponse, Document
from dre.driver import DockerDriver
from dre.errors import DataLossRefused, DuplicateFieldError, NoHealthyBackends
from dre.ingress import forward
from dre.manifest import load_json
from dre.reconciler import Reconciler
from dre.runtime import RolloutStatus, RuntimeState

DOCUMENT_LIST = pydantic.TypeAdapter(list[Document])


def _rollout_dict(st: RolloutStatus) -> dict[str, Any]:
    d = asdict(st)
    d.pop("last_progress_at")
    d.pop("progress_marker")
    return d


def _instance_dict(inst: db.InstanceRow) -> dict[str, Any]:
    return {
        "instance_id": inst.instance_id,
        "state": inst.state,
        "image": inst.template.get("image"),
        "template_hash": inst.template_hash,
        "address": inst.address,
        "restart_count": inst.restart_count,
        "last_probe": inst.last_probe,
        "created_at": inst.created_at,
    }


def create_app(reconciler: Reconciler | None = None) -> FastAPI:
    rec = reconciler or Reconciler(RuntimeState(), DockerDriver())
    app = FastAPI(title="Declarative Reconciliation Engine")
    app.state.reconciler = rec

    @app.on_event("startup")
    def startup() -> None:
        db.init_db()
        rec.start()

    @app.on_event("shutdown")
    def shutdown() -> None:
        rec.stop()

    # --- desired state ---

    @app.put("/documents")
    async def apply_documents(request: Request) -> list[dict[str, Any]]:
        # The body is parsed here so repeated keys are rejected, not overwritten.
        try:
            docs = DOCUMENT_LIST.validate_python(load_json(await request.body()))
        except DuplicateFieldError as e:
            raise HTTPException(status_code=422, detail=str(e))
        except (ValueError, pydantic.ValidationError) as e:
            raise HTTPException(status_code=422, detail=f"Invalid document list: {e}")

        # Validate everything first so a bad document applies nothing.
        parsed = []
        for doc in docs:
            try:
                parsed.append((doc, doc.parsed()))
            except pydantic.ValidationError as e:
                raise HTTPException(status_code=422, detail=f"{doc.kind}/{doc.name}: {e}")
        out = []
        changed_any = False
        for doc, spec in parsed:
            row, changed = db.upsert_document(doc.kind, doc.name, spec.model_dump())
            changed_any = changed_any or changed
            if changed:
                db.log_event("INFO", f"Applied generation {row.generation}", resource=f"{doc.kind.lower()}/{doc.name}")
            out.append({"kind": row.kind, "name": row.name, "generation": row.generation, "changed": changed})
        if changed_any:
            rec.notify()
        return out

    @app.get("/documents")
    def list_documents(kind: str | None = None) -> list[dict[str, Any]]:
        return [asdict(d) for d in db.list_documents(kind)]

    @app.delete("/documents/{kind}/{name}")
    def delete_document(kind: str, name: str) -> dict[str, Any]:
        if kind not in KINDS:
            raise HTTPException(status_code=400, detail=f"Unknown kind '{kind}'")
        if not db.delete_document(kind, name):
            raise HTTPException(status_code=404, detail=f"{kind}/{name} not found")
        db.log_event("INFO", "Document deleted", resource=f"{kind.lower()}/{name}")
        rec.notify()
        return {"deleted": f"{kind}/{name}"}

    # --- status ---

    @app.get("/workloads")
    def list_workloads() -> list[dict[str, Any]]:
        out = []
        for doc in db.list_documents("Workload"):
            st = rec.runtime.get_rollout(doc.name)
            out.append(
                {
                    "name": doc.name,
                    "replicas": doc.spec.get("replicas"),
                    "rollout": _rollout_dict(st) if st else None,
                    "instances": [_instance_dict(i) for i in db.list_instances(doc.name)],
                }
            )
        return out

    @app.get("/workloads/{name}/instances")
    def workload_instances(name: str) -> list[dict[str, Any]]:
        if db.get_document("Workload", name) is None:
            raise HTTPException(status_code=404, detail=f"Workload '{name}' not found")
        return [_instance_dict(i) for i in db.list_instances(name)]

    @app.get("/rollouts")
    def list_rollouts() -> list[dict[str, Any]]:
        return [_rollout_dict(st) for st in rec.runtime.list_rollouts()]

    @app.post("/rollouts/{workload}/cancel", status_code=202, response_model=CancelResponse)
    def cancel_rollout(workload: str) -> CancelResponse:
        if db.get_document("Workload", workload) is None:
            raise HTTPException(status_code=404, detail=f"Workload '{workload}' not found")
        rec.request_cancel(workload)
        st = rec.runtime.get_rollout(workload)
        return CancelResponse(
            workload=workload,
            state=st.state if st else "Idle",
            message="Cancellation requested; applied on the next pass.",
        )

    @app.get("/services/{name}/endpoints")
    def service_endpoints(name: str) -> dict[str, Any]:
        try:
            spec = rec.router.service(name)
        except KeyError:
            raise HTTPException(status_code=404, detail=f"Service '{name}' not found")
        return {
            "service": name,
            "scope": spec.scope,
            "port": spec.port,
            "external_port": rec.router.external_port(name),
            "endpoints": [
                {"address": e.address, "port": e.port, "instance_id": e.instance_id}
                for e in rec.runtime.get_endpoints(name)
            ],
        }

    @app.get("/events")
    def events(limit: int = Query(100, ge=1, le=1000), resource: str | None = None) -> list[dict[str, Any]]:
        return db.latest_events(limit, resource)

    # --- operator actions ---

    @app.post("/reconcile")
    def reconcile_now() -> dict[str, Any]:
        return asdict(rec.reconcile_once())

    @app.delete("/pools/{name}")
    def delete_pool(name: str, confirm: str | None = None) -> dict[str, Any]:
        try:
            rec.delete_pool(name, confirm)
        except KeyError:
            raise HTTPException(status_code=404, detail=f"Pool '{name}' not found")
        except DataLossRefused as e:
            raise HTTPException(status_code=409, detail=str(e))
        return {"deleted": name, "data_erased": True}

    # --- traffic admission ---

    @app.api_route("/svc/{service}/{path:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE"])
    async def gateway(service: str, path: str, request: Request) -> Response:
        try:
            spec = rec.router.service(service)
        except KeyError:
            raise HTTPException(status_code=404, detail=f"Service '{service}' not found")
        if spec.scope != "external":
            raise HTTPException(status_code=403, detail=f"Service '{service}' is internal-only")
        try:
            target = rec.router.select_backend(service)
        except NoHealthyBackends as e:
            raise HTTPException(status_code=503, detail=str(e))
        return await forward(request, target, path)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
