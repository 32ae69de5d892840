import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from booking.core import config
from booking.core.errors import BookingError
from booking.database import Base, engine, ensure_availability_schema, ensure_appointment_schema
from booking.models import appointment, availability, scheduled_job, user  # noqa: F401  (register tables)
from booking.routes import appointment_routes, auth_routes, availability_routes
from booking.scheduling.worker import JobPoller

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
)
logging.getLogger('httpx').setLevel(logging.WARNING)
logging.getLogger('httpcore').setLevel(logging.WARNING)

logger = logging.getLogger(__name__)

app = FastAPI(title='Appointment Booking API')

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)

job_poller: JobPoller | None = None


@app.exception_handler(BookingError)
async def booking_error_handler(request: Request, exc: BookingError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error('%s %s failed: %s', request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={'detail': exc.message})


@app.on_event('startup')
def initialize_database() -> None:
    config.validate_runtime_config()
    try:
        Base.metadata.create_all(bind=engine)
        ensure_availability_schema()
        ensure_appointment_schema()
    except SQLAlchemyError:
        logger.exception('Database initialization failed. Check DATABASE_URL and database credentials.')


@app.on_event('startup')
async def start_job_poller() -> None:
    global job_poller
    if not config.JOB_POLLER_ENABLED:
        logger.info('Job poller disabled')
        return
    job_poller = JobPoller()
    job_poller.start()


@app.on_event('shutdown')
async def stop_job_poller() -> None:
    if job_poller is not None:
        await job_poller.stop()


@app.get('/')
def root():
    return {
        'status': 'Appointment Booking API Running',
        'googleCalendarConfigured': config.google_calendar_configured(),
    }


app.include_router(auth_routes.router, prefix='/auth')
app.include_router(appointment_routes.router, prefix='/appointments')
app.include_router(availability_routes.router, prefix='/availability')
