from fastapi import APIRouter

from sonar_relay.config.log import get_logger

router = APIRouter()
log = get_logger(__name__)


@router.get('/health')
async def health():
    log.debug('Health check ok')
    return {'ok': True, 'status': 'healthy'}
