"""
Web package: the HTTP face of the engine companion service.

Modules:
    app: FastAPI application factory, request/response models, routes
    config: Settings read from the environment
Run with: python -m web
"""
