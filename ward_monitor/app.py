# ward_monitor/app.py
import os

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from .config import load_config, setup_logging
from .incidents import sort_for_inbox
from .worker import Monitor


def create_app(cfg=None, monitor=None, start=True) -> FastAPI:
    cfg = cfg or load_config()
    setup_logging(cfg)
    monitor = monitor or Monitor(cfg)

    app = FastAPI(title="ward-monitor")
    app.state.monitor = monitor
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    def on_startup():
        if start:
            monitor.start()

    @app.on_event("shutdown")
    def on_shutdown():
        if start:
            monitor.stop()

    @app.get("/health")
    def health():
        return {"ok": True, "cameras": list(monitor.workers.keys())}

    @app.get("/cameras")
    def cameras():
        return {"ok": True, "cameras": [w.status() for w in monitor.workers.values()]}

    @app.get("/cameras/{cam_id}")
    def camera(cam_id: str):
        w = monitor.workers.get(cam_id)
        if not w:
            raise HTTPException(status_code=404, detail="Unknown camera")
        return w.status()

    @app.get("/incidents")
    def incidents():
        return {"ok": True, "incidents": [i.to_dict() for i in sort_for_inbox(monitor.incidents.active())]}

    @app.post("/incidents/{incident_id}/ack")
    def ack(incident_id: str):
        inc = monitor.acknowledge(incident_id)
        return {"ok": True, "incident": inc.to_dict() if inc else None}

    @app.post("/incidents/{incident_id}/resolve")
    def resolve(incident_id: str):
        inc = monitor.resolve(incident_id)
        return {"ok": True, "incident": inc.to_dict() if inc else None}

    @app.get("/status")
    def status():
        return {"ok": True, **monitor.summary()}

    return app


def main():
    import uvicorn

    app = create_app()
    uvicorn.run(app, host=os.environ.get("WARD_MONITOR_HOST", "0.0.0.0"), port=int(os.environ.get("WARD_MONITOR_PORT", "8090")))


if __name__ == "__main__":
    main()
