from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings
from app.logging_config import configure_logging
from app.api.v1 import (
    units,
    conversions
)

configure_logging(settings.LOG_LEVEL, production=settings.APP_ENV == "production")

# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    description="Multi-tenant warehouse inventory service: unit registry and unit conversion graph",
    version="1.0.0",
    debug=settings.DEBUG
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_headers=["*"],
    allow_origins=settings.allowed_origins_list,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"]
)

# Health check
@app.get("/")
def read_root():
    return {
        "app": settings.APP_NAME,
        "version": "1.0.0",
        "status": "running"
    }

@app.get("/health")
def health_check():
    return {"status": "healthy"}


# Include routers
app.include_router(units.router, prefix=f"{settings.API_V1_PREFIX}/material", tags=["Units"])
app.include_router(conversions.router, prefix=f"{settings.API_V1_PREFIX}/material", tags=["Unit Conversions"])

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("app.main:app", host="0.0.0.0", port=8000, reload=True)
