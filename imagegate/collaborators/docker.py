"""
Image builder backed by ``docker buildx``.

The build step loads the image into the local daemon without pushing it.
Publishing pushes that same local image; it never rebuilds, and it refuses
to push a tag that no longer resolves to the scanned image.
"""

from __future__ import annotations

import logging
from typing import List

from ..exceptions import BuildError, PublishError
from ..schemas import ImageArtifact
from .base import BuildRequest
from .command import CommandRunner

logger = logging.getLogger(__name__)

BINFMT_IMAGE = "tonistiigi/binfmt:latest"


class BuildxImageBuilder:
    """Build with Buildx, publish with ``docker push``.

    Parameters
    ----------
    runner : CommandRunner
        Executes the ``docker`` CLI.
    builder_name : str
        Name of the Buildx builder created by :meth:`setup`.
    """

    def __init__(self, runner: CommandRunner, builder_name: str = "imagegate"):
        self.runner = runner
        self.builder_name = builder_name

    def setup(self) -> None:
        """Install QEMU emulators and create (or reuse) the Buildx builder."""
        self.runner.run(
            ["docker", "run", "--privileged", "--rm", BINFMT_IMAGE, "--install", "all"],
            step="builder_setup",
            error_cls=BuildError,
        )
        existing = self.runner.run(
            ["docker", "buildx", "ls"],
            step="builder_setup",
            error_cls=BuildError,
        ).stdout
        if any(line.split()[0].rstrip("*") == self.builder_name for line in existing.splitlines() if line.strip()):
            self.runner.run(
                ["docker", "buildx", "use", self.builder_name],
                step="builder_setup",
                error_cls=BuildError,
            )
        else:
            self.runner.run(
                ["docker", "buildx", "create", "--name", self.builder_name, "--driver", "docker-container", "--use"],
                step="builder_setup",
                error_cls=BuildError,
            )
        self.runner.run(
            ["docker", "buildx", "inspect", "--bootstrap"],
            step="builder_setup",
            error_cls=BuildError,
        )
        logger.info("Buildx builder '%s' ready", self.builder_name)

    def build_command(self, request: BuildRequest) -> List[str]:
        if len(request.platforms) > 1:
            raise BuildError(
                f"cannot load a multi-platform image for scanning: {', '.join(request.platforms)}",
                step="image_build",
            )
        cmd = ["docker", "buildx", "build", "--file", request.dockerfile, "--load"]
        for key, value in request.all_build_args().items():
            cmd.extend(["--build-arg", f"{key}={value}"])
        for ref in request.references:
            cmd.extend(["--tag", ref.uri])
        if request.platforms:
            cmd.extend(["--platform", ",".join(request.platforms)])
        if request.cache_dir:
            cmd.extend([
                "--cache-from", f"type=local,src={request.cache_dir}",
                "--cache-to", f"type=local,dest={request.cache_dir},mode=max",
            ])
        cmd.append(request.context)
        return cmd

    def build(self, request: BuildRequest) -> ImageArtifact:
        logger.info("Building %s", ", ".join(ref.uri for ref in request.references))
        self.runner.run(self.build_command(request), step="image_build", error_cls=BuildError)

        image_id = self._image_id(request.references[0].uri, step="image_build", error_cls=BuildError)
        for ref in request.references[1:]:
            other = self._image_id(ref.uri, step="image_build", error_cls=BuildError)
            if other != image_id:
                raise BuildError(
                    f"tags of one build resolve to different images ({image_id} vs {other})",
                    step="image_build",
                )
        logger.info("Built image %s", image_id)
        return ImageArtifact(
            image_id=image_id,
            commit_sha=request.commit_sha,
            references=list(request.references),
        )

    def publish(self, artifact: ImageArtifact) -> List[str]:
        """Push every tag of the already-built *artifact*.

        Raises
        ------
        PublishError
            If a tag no longer resolves to ``artifact.image_id`` or the push
            fails.
        """
        for ref in artifact.references:
            current = self._image_id(ref.uri, step="image_publish", error_cls=PublishError)
            if current != artifact.image_id:
                raise PublishError(
                    f"{ref.uri} resolves to {current}, not the scanned image {artifact.image_id}",
                    step="image_publish",
                )

        pushed: List[str] = []
        for ref in artifact.references:
            self.runner.run(["docker", "push", ref.uri], step="image_publish", error_cls=PublishError)
            pushed.append(ref.uri)
            logger.info("Pushed %s", ref.uri)
        return pushed

    def _image_id(self, reference: str, step: str, error_cls) -> str:
        result = self.runner.run(
            ["docker", "image", "inspect", "--format", "{{.Id}}", reference],
            step=step,
            error_cls=error_cls,
        )
        return result.stdout.strip()
