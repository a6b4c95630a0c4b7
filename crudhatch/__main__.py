if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "crudhatch.api:app", host="0.0.0.0", port=8000, log_level="info", reload=True
    )
