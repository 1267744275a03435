import argparse
import os
import sys
from importlib import metadata


def _version() -> str:
    try:
        return metadata.version("fal-openai-gateway")
    except metadata.PackageNotFoundError:
        return "unknown"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='fal-gateway', description='OpenAI-compatible gateway for fal.ai queue image models.')
    parser.add_argument('-v', '--version', action='version', version='v' + _version())
    sub = parser.add_subparsers(dest='command')

    serve = sub.add_parser('serve', help='run the gateway server')
    serve.add_argument('--host', default=os.environ.get('GATEWAY_HOST', '127.0.0.1'))
    serve.add_argument('--port', default=os.environ.get('GATEWAY_PORT', '8000'))

    smoke = sub.add_parser('smoke', help='exercise a running gateway end to end')
    smoke.add_argument('--base-url', default=os.environ.get('GATEWAY_BASE_URL', 'http://127.0.0.1:8000'))
    smoke.add_argument('--key', default=os.environ.get('WORKER_ACCESS_KEY'), help='worker access key (Bearer token)')
    smoke.add_argument('--model', help='client model id, defaults to the gateway default')
    smoke.add_argument('--prompt', help='image prompt to send')
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == 'smoke':
        from fal_gateway.service.smoke import DEFAULT_PROMPT, SmokeTarget, run_smoke

        if not args.key:
            parser.error('--key is required (or set WORKER_ACCESS_KEY)')
        target = SmokeTarget(base_url=args.base_url, access_key=args.key, model=args.model, prompt=args.prompt or DEFAULT_PROMPT)
        return 0 if run_smoke(target) else 1

    from fal_gateway.service import start_server

    host = getattr(args, 'host', None) or os.environ.get('GATEWAY_HOST', '127.0.0.1')
    port = getattr(args, 'port', None) or os.environ.get('GATEWAY_PORT', '8000')
    start_server(address=host, port=port)
    return 0


if __name__ == '__main__':
    sys.exit(main())
