"""tickflow - market data ingestion with gap repair and retention"""

__version__ = "0.1.0"

def main() -> None:
    """Main entry point for the application"""
    import uvicorn
    uvicorn.run("tickflow.app:app", host="0.0.0.0", port=8000)
