"""Main CLI entry point using Typer."""
from __future__ import annotations

import logging
import signal
import threading
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from facealbums.errors import FaceAlbumsError

app = typer.Typer(
    name="facealbums",
    help="Group uploaded photos into per-person albums by face identity.",
    add_completion=False,
    rich_markup_mode="rich",
)
console = Console()

IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp", ".bmp", ".tif", ".tiff"}


def _setup(verbose: bool = False):
    """Load .env, configure logging and return (settings, connection)."""
    from dotenv import load_dotenv
    load_dotenv()

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    from facealbums.config import Settings
    from facealbums.db.connection import get_db

    try:
        settings = Settings.from_env()
    except FaceAlbumsError as exc:
        _fail(exc)
    return settings, get_db(settings.db_path)


def _fail(exc: FaceAlbumsError) -> None:
    console.print(f"[red]{exc.code}: {exc.message}[/red]")
    raise typer.Exit(1)


@app.command(name="init-db")
def init_db() -> None:
    """Create the database (or bring its schema up to date)."""
    settings, conn = _setup()
    from facealbums.db.schema import SCHEMA_VERSION
    console.print(f"[green]Database ready[/green] at {settings.db_path} (schema v{SCHEMA_VERSION})")


@app.command()
def ingest(
    folder: Path = typer.Argument(..., help="Local folder to upload."),
    user: str = typer.Option(..., "--user", "-u", help="Owning user ID"),
    folder_id: str = typer.Option(..., "--folder", "-f", help="Folder ID the images belong to"),
    no_recursive: bool = typer.Option(False, "--no-recursive", help="Don't scan subfolders"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    """Copy images into blob storage and register them as uploaded.

    Example::

        facealbums ingest ~/photos/party --user u1 --folder party
        facealbums process --user u1 --folder party --namespace u1-faces
    """
    settings, conn = _setup(verbose)

    from facealbums.db.repository import Repository
    from facealbums.storage import get_blob_store, image_key

    if not folder.is_dir():
        console.print(f"[red]'{folder}' is not a directory.[/red]")
        raise typer.Exit(1)

    repo = Repository(conn)
    blobs = get_blob_store(settings)
    pattern = "*" if no_recursive else "**/*"
    files = sorted(
        p for p in folder.glob(pattern)
        if p.is_file() and p.suffix.lower() in IMAGE_EXTENSIONS
    )
    if not files:
        console.print("[yellow]No images found.[/yellow]")
        return

    registered = 0
    for path in files:
        rel = path.relative_to(folder).as_posix()
        key = image_key(user, f"{folder_id}/{rel}")
        try:
            if not blobs.exists(key):
                content_type = "image/png" if path.suffix.lower() == ".png" else "image/jpeg"
                blobs.put(key, path.read_bytes(), content_type=content_type)
            repo.register_upload(user, folder_id, path.name, key)
            registered += 1
        except FaceAlbumsError as exc:
            console.print(f"[red]Error uploading {rel}: {exc.message}[/red]")
        if verbose:
            console.print(f"  [dim]{rel} → {key}[/dim]")

    console.print(f"[green]Registered {registered}/{len(files)} image(s)[/green] in folder '{folder_id}'")


@app.command(name="create-collection")
def create_collection(
    namespace: str = typer.Argument(..., help="Clustering namespace to create."),
    user: Optional[str] = typer.Option(None, "--user", "-u", help="Owning user ID"),
) -> None:
    """Create a clustering namespace in the face oracle (idempotent)."""
    settings, conn = _setup()

    from facealbums.db.repository import Repository
    from facealbums.oracle import get_oracle

    try:
        created = get_oracle(settings).create_collection(namespace)
    except FaceAlbumsError as exc:
        _fail(exc)
    Repository(conn).create_collection(namespace, user)
    if created:
        console.print(f"[green]Created collection[/green] {namespace}")
    else:
        console.print(f"[yellow]Collection {namespace} already exists.[/yellow]")


@app.command()
def process(
    user: str = typer.Option(..., "--user", "-u", help="Owning user ID"),
    folder_id: str = typer.Option(..., "--folder", "-f", help="Folder ID to process"),
    namespace: str = typer.Option(..., "--namespace", "-n", help="Clustering namespace"),
    page_size: Optional[int] = typer.Option(None, "--page-size", min=1, help="Images per page (default: 50)"),
    resume_detected: bool = typer.Option(
        False, "--resume-detected",
        help="Also cluster images left in FACES_DETECTED by an interrupted run",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    """Run the clustering job for one folder.

    Press Ctrl+C to stop after the current image; run the command again to
    resume from where it stopped.
    """
    settings, conn = _setup(verbose)
    if page_size is not None:
        settings.page_size = page_size

    from facealbums.db.repository import Repository
    from facealbums.models import ImageStatus
    from facealbums.pipeline.controller import COMPLETED_MESSAGE, build_controller

    counts = Repository(conn).count_by_status(user, folder_id)
    total = counts.get(ImageStatus.UPLOADED_TO_S3.value, 0)
    if resume_detected:
        total += counts.get(ImageStatus.FACES_DETECTED.value, 0)

    cancel = threading.Event()

    def _handle_sigint(signum, frame) -> None:
        if cancel.is_set():
            raise KeyboardInterrupt
        console.print("\n[yellow]Stopping after the current image (Ctrl+C again to abort)...[/yellow]")
        cancel.set()

    original_handler = signal.getsignal(signal.SIGINT)
    signal.signal(signal.SIGINT, _handle_sigint)
    try:
        controller = build_controller(settings, conn)
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("({task.completed}/{task.total})"),
            console=console,
        ) as progress:
            task = progress.add_task("Processing", total=total)
            report = controller.run(
                user, folder_id, namespace,
                resume_detected=resume_detected,
                cancel=cancel,
                on_image=lambda _image: progress.advance(task),
            )
    except FaceAlbumsError as exc:
        _fail(exc)
    finally:
        signal.signal(signal.SIGINT, original_handler)

    colour = "green" if report.message == COMPLETED_MESSAGE else "yellow"
    console.print(f"[{colour}]{report.message}[/{colour}]")
    console.print(
        f"  pages: {report.pages}  images: {report.images_seen}  "
        f"matched: {report.matched}  indexed: {report.indexed}  "
        f"no faces: {report.gate_rejected}  failed: {report.gate_failed + report.cluster_failed}"
    )
    console.print(
        f"  new faces: {report.faces_created}  album rows: {report.albums_created}  "
        f"thumbnails: {report.thumbnails_created} (failed {report.thumbnails_failed})"
    )


@app.command()
def albums(
    user: str = typer.Option(..., "--user", "-u", help="Owning user ID"),
    namespace: str = typer.Option(..., "--namespace", "-n", help="Clustering namespace"),
) -> None:
    """Show identity albums, folded across pages and runs."""
    settings, conn = _setup()

    from facealbums.db.repository import Repository
    from facealbums.pipeline.albums import AlbumMaterializer

    repo = Repository(conn)
    folded = AlbumMaterializer(repo).fold(user, namespace)
    if not folded:
        console.print("[yellow]No albums yet.[/yellow]")
        return

    table = Table(title=f"Albums: {namespace}", show_header=True, header_style="bold cyan")
    table.add_column("Face ID", style="bold")
    table.add_column("Images", justify="right")
    table.add_column("Thumbnail")
    for face_id, image_ids in folded.items():
        thumb = repo.get_thumbnail(face_id, namespace)
        table.add_row(face_id, str(len(image_ids)), thumb["storage_key"] if thumb else "-")
    console.print(table)


@app.command()
def status(
    user: Optional[str] = typer.Option(None, "--user", "-u", help="Restrict counts to one user"),
    folder_id: Optional[str] = typer.Option(None, "--folder", "-f", help="Restrict counts to one folder"),
) -> None:
    """Show image counts per status and recent job runs."""
    settings, conn = _setup()

    from facealbums.db.repository import Repository
    from facealbums.models import ImageStatus

    repo = Repository(conn)
    counts = repo.count_by_status(user, folder_id)

    table = Table(title="Images", show_header=True, header_style="bold cyan")
    table.add_column("Status", style="bold")
    table.add_column("Count", justify="right")
    for s in ImageStatus:
        table.add_row(s.value, str(counts.get(s.value, 0)))
    console.print(table)

    runs = repo.recent_runs()
    if not runs:
        console.print("[dim]No job runs recorded.[/dim]")
        return

    runs_table = Table(title="Recent Jobs", show_header=True, header_style="bold cyan")
    runs_table.add_column("Started")
    runs_table.add_column("User / Folder")
    runs_table.add_column("Namespace")
    runs_table.add_column("Status")
    runs_table.add_column("Images", justify="right")
    runs_table.add_column("Faces", justify="right", style="green")
    runs_table.add_column("Error", style="red")
    for run in runs:
        runs_table.add_row(
            run["started_at"],
            f"{run['user_id']} / {run['folder_id']}",
            run["namespace"],
            run["status"],
            str(run["images_seen"]),
            str(run["faces_created"]),
            (run["error"] or "")[:60],
        )
    console.print(runs_table)


@app.command(name="register-face")
def register_face(
    image: Path = typer.Argument(..., help="Photo containing exactly one face."),
    namespace: str = typer.Option(..., "--namespace", "-n", help="Enrollment namespace"),
) -> None:
    """Enroll a face, or report the existing enrollment it matches."""
    settings, conn = _setup()

    from facealbums.oracle import get_oracle
    from facealbums.pipeline.enrollment import register_face as _register

    if not image.exists():
        console.print(f"[red]'{image}' not found.[/red]")
        raise typer.Exit(1)
    try:
        result = _register(
            get_oracle(settings), image.read_bytes(), namespace,
            threshold=settings.auth_match_threshold,
        )
    except FaceAlbumsError as exc:
        _fail(exc)

    if result["is_new_face"]:
        console.print(f"[green]Enrolled new face[/green] {result['face_id']}")
    else:
        console.print(
            f"[yellow]Already enrolled[/yellow] as {result['face_id']} "
            f"({result['similarity']:.1f}% similar)"
        )


@app.command(name="verify-face")
def verify_face(
    image: Path = typer.Argument(..., help="Photo to look up."),
    namespace: str = typer.Option(..., "--namespace", "-n", help="Enrollment namespace"),
) -> None:
    """Look up the enrolled face most similar to IMAGE."""
    settings, conn = _setup()

    from facealbums.oracle import get_oracle
    from facealbums.pipeline.enrollment import verify_face as _verify

    if not image.exists():
        console.print(f"[red]'{image}' not found.[/red]")
        raise typer.Exit(1)
    try:
        match = _verify(
            get_oracle(settings), image.read_bytes(), namespace,
            threshold=settings.auth_match_threshold,
        )
    except FaceAlbumsError as exc:
        _fail(exc)

    if match is None:
        console.print("[yellow]No matching face.[/yellow]")
        raise typer.Exit(1)
    console.print(f"[green]Match[/green] {match['face_id']} ({match['similarity']:.1f}% similar)")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
