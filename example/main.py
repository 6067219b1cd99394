import argparse
import asyncio
import base64
import mimetypes
from pathlib import Path

from image_edit_server import ImageEditServer
from image_editor.client import ImageEditClient
from image_editor.errors import MissingCredentialError
from image_editor.models import EditorConfig
from image_editor.notifier import LoggingNotifier
from image_editor.state_machine import EditorStatus, ImageEditor


def state_changed(state):
    print(f"Editor state: {state.status.value}")


async def main(image: Path, prompt: str, output: Path):
    PORT = 8000
    config = EditorConfig(poll_interval_seconds=2.0)

    try:
        server = ImageEditServer.from_env(config)
    except MissingCredentialError as e:
        print(f"Cannot start: {e}")
        return
    await server.start(port=PORT)
    print(f"Server started on http://localhost:{PORT}")

    client = ImageEditClient(f"http://localhost:{PORT}")
    editor = ImageEditor(
        client, config, notifier=LoggingNotifier(), on_state_change=state_changed
    )

    content_type = mimetypes.guess_type(image.name)[0]
    try:
        await editor.select_file(image.name, content_type, image.read_bytes())
        if editor.state.status != EditorStatus.ready:
            print(f"Upload rejected: {editor.state.error}")
            return

        editor.set_prompt(prompt)
        await editor.process()
        state = await editor.wait_for_result()

        if state.status == EditorStatus.success:
            encoded = state.processed_image_url.split(",", 1)[1]
            output.write_bytes(base64.b64decode(encoded))
            print(f"Edited image written to {output}")
        else:
            print(f"Edit failed: {state.error}")
    finally:
        await editor.close()
        await server.stop()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Edit an image with a text prompt")
    parser.add_argument("image", type=Path)
    parser.add_argument("prompt")
    parser.add_argument("--output", type=Path, default=Path("edited.png"))
    args = parser.parse_args()
    asyncio.run(main(args.image, args.prompt, args.output))
