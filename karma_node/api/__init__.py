"""HTTP routers for the karma engine. Each router reads the engine from app.state."""
