import logging

from fastapi import FastAPI
from fastapi.responses import PlainTextResponse

from wavetrack.config import settings
from wavetrack.routers import dashboard, progress, waves

logging.basicConfig(
    level=settings.log_level.upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
)

app = FastAPI(title='Wave Progress Ledger')

app.include_router(waves.router)
app.include_router(progress.router)
app.include_router(dashboard.router)


@app.get('/healthz')
def healthz() -> dict[str, str]:
    return {'status': 'ok'}


@app.get('/robots.txt', response_class=PlainTextResponse)
def robots_txt() -> str:
    return 'User-agent: *\nDisallow: /\n'
