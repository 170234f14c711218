"""Serve the generated static site locally for preview."""

import http.server
import socketserver
import webbrowser
from functools import partial
from pathlib import Path
from urllib.parse import unquote, urlsplit

DEFAULT_PORT = 8000


def resolve_path(root: Path, url_path: str) -> Path:
    """
    Map a request path onto a file under *root*.

    Directories resolve to their index.html; anything that does not exist
    (or would escape *root*) falls back to the site's index.html, the way
    the live site routes unknown paths to the front page.
    """
    root = root.resolve()
    path = unquote(urlsplit(url_path).path).lstrip("/")
    candidate = (root / path).resolve()

    if not candidate.is_relative_to(root):
        return root / "index.html"
    if candidate.is_dir():
        candidate = candidate / "index.html"
    if not candidate.is_file():
        return root / "index.html"
    return candidate


class Handler(http.server.SimpleHTTPRequestHandler):
    def __init__(self, *args, root: Path, **kwargs):
        self.root = root
        super().__init__(*args, directory=str(root), **kwargs)

    def do_GET(self):
        if urlsplit(self.path).path == "/favicon.ico":
            self.send_response(204)
            self.end_headers()
            return
        super().do_GET()

    def translate_path(self, path):
        return str(resolve_path(self.root, path))

    def log_message(self, format, *args):
        # Suppress default per-request logging; print a cleaner version
        print(f"  {self.command} {self.path}")


def serve(output_dir: Path, port: int = DEFAULT_PORT, open_browser: bool = True) -> None:
    if not output_dir.exists() or not any(output_dir.iterdir()):
        print(f"'{output_dir}' is empty or missing. Run 'ct generate' first.")
        return

    url = f"http://localhost:{port}"
    print(f"Serving '{output_dir}/' at {url}")
    print("Press Ctrl+C to stop.\n")
    if open_browser:
        webbrowser.open(url)

    socketserver.TCPServer.allow_reuse_address = True
    with socketserver.TCPServer(("", port), partial(Handler, root=output_dir.resolve())) as httpd:
        try:
            httpd.serve_forever()
        except KeyboardInterrupt:
            print("\nServer stopped.")


if __name__ == "__main__":
    serve(Path("output"))
