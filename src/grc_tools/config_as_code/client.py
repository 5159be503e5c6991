import argparse
import os
import sys
from typing import Optional

import httpx

DEFAULT_SERVER_URL = "http://localhost:8000"


def _post(
    server_url: str,
    route: str,
    payload: dict,
    workspace_id: Optional[str] = None,
    http_client: Optional[httpx.Client] = None,
) -> dict:
    endpoint = f"{str(server_url).rstrip('/')}{route}"
    params = {"workspace_id": workspace_id} if workspace_id else None
    client_to_use = http_client if http_client else httpx

    try:
        response = client_to_use.post(endpoint, json=payload, params=params)
        response.raise_for_status()
        return response.json()
    except httpx.HTTPStatusError as e:
        print(
            f"Error response {e.response.status_code} while requesting {e.request.url!r}.",
            file=sys.stderr,
        )
        print(f"Details: {e.response.text}", file=sys.stderr)
        raise
    except httpx.RequestError as e:
        print(f"An error occurred while requesting {e.request.url!r}.", file=sys.stderr)
        print(f"Details: {str(e)}", file=sys.stderr)
        raise


def preview_remote(
    server_url: str,
    path: str,
    content: str,
    file_format: Optional[str] = None,
    workspace_id: Optional[str] = None,
    http_client: Optional[httpx.Client] = None,
) -> dict:
    """
    Asks a running config server what applying ``content`` at ``path`` would change.

    Args:
        server_url: Base URL of the server.
        http_client: Optional httpx.Client; a one-off request is made when None.

    Returns:
        The preview JSON: counts, samples, warnings, errors and the full plan.

    Raises:
        httpx.HTTPStatusError: If the server returns an error status code.
        httpx.RequestError: For other request issues (e.g., connection error).
    """
    payload = {"path": path, "content": content}
    if file_format:
        payload["format"] = file_format
    return _post(server_url, "/v1/config/preview", payload, workspace_id, http_client)


def apply_remote(
    server_url: str,
    path: str,
    content: str,
    file_format: Optional[str] = None,
    commit_message: Optional[str] = None,
    workspace_id: Optional[str] = None,
    dry_run: bool = False,
    user_id: str = "api",
    http_client: Optional[httpx.Client] = None,
    conflict_resolution: Optional[str] = None,
) -> dict:
    """
    Applies ``content`` on the server. A held apply lock, or live edits that
    conflict with the file under the default "abort" resolution, surface as
    an HTTP 409. Pass "force" or "skip" as ``conflict_resolution`` to proceed.
    """
    payload = {"path": path, "content": content, "dry_run": dry_run, "user_id": user_id}
    if conflict_resolution:
        payload["conflict_resolution"] = conflict_resolution
    if file_format:
        payload["format"] = file_format
    if commit_message:
        payload["commit_message"] = commit_message
    return _post(server_url, "/v1/config/apply", payload, workspace_id, http_client)


def main():
    parser = argparse.ArgumentParser(description="Client for the GRC config-as-code server")
    parser.add_argument("action", choices=["preview", "apply"])
    parser.add_argument("file", type=str, help="Local config file to send.")
    parser.add_argument(
        "--server-url",
        type=str,
        default=DEFAULT_SERVER_URL,
        help=f"The base URL of the config server (default: {DEFAULT_SERVER_URL}).",
    )
    parser.add_argument("--path", type=str, help="Path to store the file under (default: file name).")
    parser.add_argument("--workspace-id", type=str)
    parser.add_argument("--dry-run", action="store_true")
    parser.add_argument("-m", "--message", type=str, default=None)
    parser.add_argument(
        "--on-conflict",
        choices=["abort", "force", "skip"],
        default=None,
        help="How apply treats live edits made since the last apply (server default: abort).",
    )

    args = parser.parse_args()

    try:
        with open(args.file, "r") as f:
            content = f.read()
    except OSError as e:
        print(f"Error: Could not read {args.file}: {e}", file=sys.stderr)
        sys.exit(2)
    path = args.path or os.path.basename(args.file)

    try:
        if args.action == "preview":
            result = preview_remote(args.server_url, path, content, workspace_id=args.workspace_id)
        else:
            result = apply_remote(
                args.server_url, path, content, commit_message=args.message,
                workspace_id=args.workspace_id, dry_run=args.dry_run, user_id="cli",
                conflict_resolution=args.on_conflict,
            )
    except httpx.HTTPError:
        # Details were already printed by _post
        print(f"Config {args.action} request failed.", file=sys.stderr)
        sys.exit(1)

    print("Server response:")
    print(result)
    sys.exit(1 if result.get("errors") else 0)


if __name__ == "__main__":
    main()
