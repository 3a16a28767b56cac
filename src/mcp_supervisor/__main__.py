"""
Point d'entrée pour `python -m mcp_supervisor`.
"""
import logging

import uvicorn


def main():
    """Fonction principale."""
    import argparse

    parser = argparse.ArgumentParser(description="MCP Supervisor")
    parser.add_argument("--host", default="127.0.0.1", help="Host (défaut: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8010, help="Port (défaut: 8010)")
    parser.add_argument("--reload", action="store_true", help="Activer le reload auto")
    parser.add_argument(
        "--log-level",
        default="info",
        choices=["debug", "info", "warning", "error"],
        help="Niveau de log (défaut: info)",
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger(__name__).info(f"🚀 Démarrage du MCP Supervisor sur {args.host}:{args.port}")

    uvicorn.run(
        "mcp_supervisor.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=args.log_level,
    )


if __name__ == "__main__":
    main()
