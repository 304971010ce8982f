#!/usr/bin/env python3
"""
Clinic Workflow Entry Point

Starts the FastAPI server with the workflow engine.
"""

import sys

from clinic_workflow.api import run_server
from clinic_workflow.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting Clinic Workflow Engine...")
    print(f"Storage: {config.storage_type}")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server(debug=False)
    except KeyboardInterrupt:
        print("\nShutting down Clinic Workflow Engine...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
