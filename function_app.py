import os, json, logging, traceback
from datetime import datetime, timezone
import azure.functions as func

app = func.FunctionApp(http_auth_level=func.AuthLevel.ANONYMOUS)
logger = logging.getLogger(__name__)

# Only try dotenv locally (Azure sets WEBSITE_SITE_NAME / FUNCTIONS_WORKER_RUNTIME)
IS_AZURE = bool(os.getenv("WEBSITE_SITE_NAME")) or os.getenv("FUNCTIONS_WORKER_RUNTIME") == "python"
if not IS_AZURE:
    try:
        from dotenv import load_dotenv
        load_dotenv()
    except ImportError:
        pass

REGISTERED: list[str] = []
FAILURES: dict[str, dict] = {}

def _try(modpath: str, name: str):
    try:
        mod = __import__(modpath, fromlist=["bp"])
        app.register_functions(getattr(mod, "bp"))
        REGISTERED.append(name)
    except Exception as e:
        FAILURES[name] = {"error": repr(e), "trace": traceback.format_exc()}

# Register at startup so the Functions host discovers HTTP triggers
_try("routes.email_verification", "email_verification")

@app.function_name(name="Ping")
@app.route(route="ping", methods=["GET"])
def ping(req: func.HttpRequest) -> func.HttpResponse:
    return func.HttpResponse("ok", mimetype="text/plain")

# Diagnostics (read-only)
@app.function_name(name="Diag")
@app.route(route="_diag", methods=["GET"])
def diag(req: func.HttpRequest) -> func.HttpResponse:
    return func.HttpResponse(
        json.dumps({"registered": REGISTERED, "failures": FAILURES}),
        mimetype="application/json"
    )

# Daily retention sweep, 02:00 UTC
@app.function_name(name="CleanupEmailVerifications")
@app.timer_trigger(schedule="0 0 2 * * *", arg_name="timer", run_on_startup=False)
def cleanup_email_verifications(timer: func.TimerRequest) -> None:
    from db import SessionLocal
    from services.verification_cleanup import cleanup_verifications
    from services.verification_settings import VerificationSettings

    if timer.past_due:
        logger.warning("Verification cleanup timer is past due")

    settings = VerificationSettings.from_env()
    now = datetime.now(timezone.utc).replace(tzinfo=None)
    try:
        cleanup_verifications(SessionLocal, now, settings.retention)
    except Exception:
        logger.exception("Verification cleanup failed")
        raise
