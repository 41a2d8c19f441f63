"""StrandSign HTTP service: storage, business flows and the FastAPI app."""
