"""
Engine package: supervision of the external UCI engine process.

Modules:
    constants: protocol tokens, option defaults, request bounds, timeouts
    errors: EngineError hierarchy
    serializer: FIFO single-flight gate around the engine conversation
    process: subprocess lifecycle, stream I/O, crash and timeout handling
    service: EngineService, the context object shared by HTTP handlers
"""
