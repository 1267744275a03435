import os

from fal_gateway.service import start_server


def main():
    host = os.environ.get("GATEWAY_HOST", "127.0.0.1")
    port = os.environ.get("GATEWAY_PORT", "8000")
    start_server(address=host, port=port)


if __name__ == "__main__":
    main()
