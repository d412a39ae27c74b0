from fastapi import FastAPI

from purrplexed.api import analysis_sse

app = FastAPI(title="Purrplexed", version="0.1.0")

# Include routers
app.include_router(analysis_sse.router)


@app.get("/health")
async def health_check():
    return {"status": "healthy"}
