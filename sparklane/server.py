"""HTTP front end that accepts project uploads and starts them in VMs."""

from __future__ import annotations

import argparse
import json
import logging
import random
import uuid
from dataclasses import dataclass
from typing import Awaitable, Callable

from aiohttp import BodyPartReader, hdrs, web
from dotenv import load_dotenv

from sparklane import vm
from sparklane.store import DatabaseError, Db

logger = logging.getLogger(__name__)

DEFAULT_PROJECT_NAME = "Sparklane Cloud Project"
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8096
DEFAULT_ATTEMPTS = 11
INSTANCE_PORT = 8080

ADJECTIVES = (
    "impeccable",
    "ubiquitous",
    "catchy",
    "slippery",
    "overbearing",
    "quick",
    "nimble",
    "simple",
    "complex",
    "golden",
    "cooked",
)
NOUNS = (
    "octopus",
    "project",
    "waste",
    "fox",
    "car",
    "place",
    "gold",
    "silver",
    "diamond",
    "slinky",
)

MISSING_DISPOSITION = "Error with file upload. Please try again later"
MISSING_NAME = "Error with File upload. Please try again later"
BAD_ARCHIVE = "Couldn't process your code files, please try again later."
NO_SUBDOMAIN = (
    "Your project identifier was taken and we couldn't generate a new one, "
    "please try again later."
)
NO_BUILD = "No build command in config."
NO_RUN = "No run command in config."

Spinner = Callable[[vm.Config, "list[tuple[str, bytes]]", Db], Awaitable[None]]


@dataclass
class Metadata:
    """Project settings sent alongside an upload."""

    name: str = DEFAULT_PROJECT_NAME
    project: str | None = None
    build: list[str] | None = None
    run: str | None = None


def parse_metadata(data) -> Metadata:
    """Parse the JSON metadata part of a deploy request.

    Fields of the wrong type are treated as absent; non-string entries of
    ``build`` are dropped. Raises ValueError when the data is not JSON.
    """
    document = json.loads(data)
    if not isinstance(document, dict):
        document = {}

    name = document.get("name")
    project = document.get("project")
    build = document.get("build")
    run = document.get("run")
    return Metadata(
        name=name if isinstance(name, str) else DEFAULT_PROJECT_NAME,
        project=project if isinstance(project, str) else None,
        build=[item for item in build if isinstance(item, str)]
        if isinstance(build, list)
        else None,
        run=run if isinstance(run, str) else None,
    )


def random_project_name(rng: random.Random) -> str:
    """Return an adjective-noun name such as ``quick-fox``."""
    return f"{rng.choice(ADJECTIVES)}-{rng.choice(NOUNS)}"


async def _is_free(db: Db, key: str) -> bool:
    try:
        return await db.get(key) is None
    except DatabaseError:
        return True


async def pick_subdomain(db: Db, rng: random.Random, attempts=DEFAULT_ATTEMPTS) -> str | None:
    """Return a generated name not yet stored in ``db``, or None if every try was taken."""
    for _ in range(attempts):
        candidate = random_project_name(rng)
        if await _is_free(db, candidate):
            return candidate
    return None


def _bad_request_json(message: str) -> web.Response:
    return web.json_response({"error": message}, status=400)


def create_app(db: Db, spinner: Spinner | None = None) -> web.Application:
    """Build the web application serving ``POST /deploy``."""
    spin = spinner if spinner is not None else vm.spin
    rng = random.SystemRandom()

    async def deploy(request: web.Request) -> web.StreamResponse:
        logger.info("Deploy hit")
        subdomain = await pick_subdomain(db, rng)
        archive = bytearray()
        build_commands: list[str] | None = None
        run_command: str | None = None

        try:
            reader = await request.multipart()
        except (ValueError, AssertionError) as exc:
            return web.Response(status=400, text=str(exc))

        count = 0
        while (part := await reader.next()) is not None:
            count += 1
            if not isinstance(part, BodyPartReader) or hdrs.CONTENT_DISPOSITION not in part.headers:
                return _bad_request_json(MISSING_DISPOSITION)
            name = part.name
            if name is None:
                return _bad_request_json(MISSING_NAME)
            if name == "metadata":
                raw = await part.read()
                try:
                    meta = parse_metadata(bytes(raw))
                except ValueError as exc:
                    return web.Response(status=500, text=str(exc))
                logger.info("Project name: %s", meta.name)
                if meta.project is not None and await _is_free(db, meta.project):
                    subdomain = meta.project
                if meta.build is not None:
                    build_commands = meta.build
                run_command = meta.run
            elif name == "file":
                archive.extend(await part.read())
        logger.info("File upload complete after %d parts", count)

        try:
            files = vm.extract_zip(bytes(archive))
        except Exception as exc:  # any archive failure is the client's
            logger.error("Extracting error: %s", exc)
            return web.Response(status=400, text=BAD_ARCHIVE)

        if subdomain is None:
            return web.Response(status=400, text=NO_SUBDOMAIN)
        if build_commands is None:
            return web.Response(status=400, text=NO_BUILD)
        if run_command is None:
            return web.Response(status=400, text=NO_RUN)

        config = vm.Config(
            id=str(uuid.uuid4()),
            sub=subdomain,
            port=INSTANCE_PORT,
            build_commands=build_commands,
            run_command=run_command,
        )
        try:
            await spin(config, files, db)
        except OSError as exc:
            logger.error("Spinning failed for %s: %s", config.id, exc)
            return web.Response(status=500, text=str(exc))

        logger.info("VM spinning at %s", config.id)
        return web.json_response({})

    app = web.Application()
    app.router.add_post("/deploy", deploy)
    return app


def main(argv=None) -> int:
    """Run the deploy server."""
    load_dotenv()
    parser = argparse.ArgumentParser(prog="sparklane", description="Project deploy server.")
    parser.add_argument("--host", default=DEFAULT_HOST)
    parser.add_argument("--port", type=int, default=DEFAULT_PORT)
    parser.add_argument("--db", default="sparklane.db", help="path of the state database")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO)
    app = create_app(Db(args.db))
    print(f"Server starting on http://localhost:{args.port}/")
    web.run_app(app, host=args.host, port=args.port, print=None)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())