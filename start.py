#!/usr/bin/env python3
"""
Startup script for Loomi Cutout API
Supports different deployment scenarios and configurations
"""

import os
import sys
import argparse
import uvicorn


def main():
    parser = argparse.ArgumentParser(description="Start Loomi Cutout API")
    parser.add_argument("--host", help="Host to bind to")
    parser.add_argument("--port", type=int, help="Port to bind to")
    parser.add_argument("--workers", type=int, help="Number of worker processes")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload for development")
    parser.add_argument("--config", help="Path to .env file")
    parser.add_argument("--backend", choices=["segformer", "rembg"], help="Segmentation backend")
    parser.add_argument("--no-warmup", action="store_true", help="Skip model pre-loading on startup")

    args = parser.parse_args()

    # Load environment variables before config is imported
    if args.config:
        from dotenv import load_dotenv
        load_dotenv(args.config)

    if args.backend:
        os.environ["SEGMENTATION_BACKEND"] = args.backend
    if args.no_warmup:
        os.environ["MODEL_WARMUP_ON_STARTUP"] = "false"

    from config import config

    host = args.host or config.host
    port = args.port or config.port
    workers = args.workers or config.workers

    # Validate configuration
    warnings = config.validate()
    if warnings:
        print("⚠️  Configuration warnings:")
        for warning in warnings:
            print(f"   - {warning}")
        print()

    # Print startup information
    print("🎯 Loomi Cutout API")
    print(f"   Version: {config.version}")
    print(f"   Host: {host}:{port}")
    print(f"   Workers: {workers}")
    print(f"   Segmentation backend: {config.segmentation_backend}")
    print(f"   Target size: {config.target_max_width}x{config.target_max_height}")
    print(f"   Output format: {config.output_format}")
    print(f"   File size limit: {config.max_upload_mb}MB")
    print()

    # Start the server
    try:
        uvicorn.run(
            "main:app",
            host=host,
            port=port,
            workers=workers if not args.reload else 1,
            reload=args.reload,
            log_level=config.log_level.lower(),
            access_log=True,
            use_colors=True
        )
    except KeyboardInterrupt:
        print("\n👋 Shutting down gracefully...")
    except Exception as e:
        print(f"❌ Error starting server: {e}")
        sys.exit(1)

if __name__ == "__main__":
    main()
