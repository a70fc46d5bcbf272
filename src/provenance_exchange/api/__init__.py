"""HTTP interface — FastAPI dependencies, middleware and routers."""
