import uvicorn  # type: ignore

from institute_rbac.core import config
from institute_rbac.utils import get_logger

log = get_logger(__name__)

if __name__ == "__main__":
    log.info("Running RBAC server on %s:%d", config.HOST, config.PORT)
    uvicorn.run("institute_rbac.main:app", reload=True, host=config.HOST, port=config.PORT)
