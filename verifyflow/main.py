from fastapi import FastAPI
from fastapi import Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from verifyflow.api.routes import router
from verifyflow.api.admin_routes import router as admin_router
from verifyflow.core.errors import VerificationError
from verifyflow.core.step_graph import get_graph
from verifyflow.observability.logging import log
from verifyflow.settings import settings

app = FastAPI(title="Verification Workflow API")

origins = [x.strip() for x in settings.CORS_ORIGINS.split(",") if x.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)
app.include_router(admin_router)


@app.get("/health")
def health():
    return {"status": "ok"}


@app.exception_handler(VerificationError)
async def verification_error_handler(request: Request, exc: VerificationError):
    log(
        event="request_failed",
        path=str(request.url.path),
        errorCode=exc.code,
        httpStatus=exc.http_status,
        message=exc.message,
    )
    return JSONResponse(status_code=exc.http_status, content={"status": "error", "error": exc.to_dict()})


# Fail at boot, not on first request, if the step configuration is inconsistent.
_graph = get_graph()
print(f"[boot] steps={','.join(_graph.order)} required={','.join(sorted(_graph.required_steps()))}")
