#!/usr/bin/env python3
"""
Exam Integrity Engine - Startup Script
Run this file to start the server with proper configuration
"""

import os
import sys
from pathlib import Path


def check_environment():
    """Check if environment is properly set up"""
    print("🔍 Checking environment setup...")

    # Check if .env file exists
    env_file = Path(".env")
    if not env_file.exists():
        print("⚠️  WARNING: .env file not found, using process environment only")

    from dotenv import load_dotenv
    load_dotenv()

    if not os.getenv("SECRET_KEY"):
        print("❌ ERROR: Missing required environment variable:")
        print("   - SECRET_KEY")
        print("\n📝 Please update your .env file")
        return False

    if not (os.getenv("SUPABASE_URL") and (os.getenv("SUPABASE_SERVICE_ROLE_KEY") or os.getenv("SUPABASE_KEY"))):
        print("ℹ️  Supabase not configured: audit records stay in memory")

    print("✅ Environment check passed!")
    return True


def check_dependencies():
    """Check if all dependencies are installed"""
    print("\n🔍 Checking dependencies...")

    try:
        import fastapi
        import uvicorn
        import jose
        import supabase
        print("✅ All core dependencies installed!")
        return True
    except ImportError as e:
        print(f"❌ ERROR: Missing dependency: {e}")
        print("\n📦 Install dependencies with:")
        print("   pip install -e .")
        return False


def print_banner():
    """Print startup banner"""
    banner = """
╔═══════════════════════════════════════════════════╗
║                                                   ║
║              Exam Integrity Engine                ║
║       Incident Correlation & Escalation           ║
║                                                   ║
║                  Version 1.0.0                    ║
║                                                   ║
╚═══════════════════════════════════════════════════╝
    """
    print(banner)


def print_startup_info(host: str, port: int):
    """Print startup information"""
    print("\n🚀 Starting server...")
    print("\n📚 Once started, you can access:")
    print(f"   • API Docs (Swagger): http://{host}:{port}/docs")
    print(f"   • Health Check:       http://{host}:{port}/health")
    print("\n💡 Press CTRL+C to stop the server")
    print("\n" + "="*55 + "\n")


def main():
    """Main startup function"""
    print_banner()

    if not check_environment():
        sys.exit(1)

    if not check_dependencies():
        sys.exit(1)

    try:
        import uvicorn
        from exam_integrity.config import settings

        print_startup_info(settings.host, settings.port)

        uvicorn.run(
            "exam_integrity.main:app",
            host=settings.host,
            port=settings.port,
            reload=settings.debug,
            log_level="info"
        )
    except KeyboardInterrupt:
        print("\n\n👋 Server stopped by user")
    except Exception as e:
        print(f"\n❌ ERROR: Failed to start server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
