# pipelane_workflow.py
# Frontend and backend lanes: each only runs when its own directory changes,
# restores its npm cache from the lockfile hash, and pushes its image to
# Amazon ECR and Docker Hub.
from __future__ import annotations

from pipelane import wf, pipeline, install, test, build, containerize, publish, registry, cache

ECR = "123456789012.dkr.ecr.us-east-1.amazonaws.com"


def workflow():
    return wf(
        pipeline(
            "frontend",
            install("npm ci"),
            test("npm test -- --watchAll=false", env={"CI": "true"}),
            build("npm run build"),
            containerize(),
            publish(),
            cwd="app/frontend",
            triggers=["app/frontend/**"],
            cache=cache(
                "npm-frontend",
                lockfiles=["app/frontend/package-lock.json"],
                paths=["~/.npm"],
            ),
            registries=[
                registry(ECR, "frontend", credential="ECR_PASSWORD", username="AWS"),
                registry("docker.io", "acme/frontend", credential="DOCKERHUB_TOKEN", username="acme",
                         content_addressed=True),
            ],
        ),
        pipeline(
            "backend",
            install("npm install"),
            build("npm run build --if-present"),
            containerize(),
            publish(),
            cwd="api",
            triggers=["api/**"],
            cache=cache(
                "npm-backend",
                lockfiles=["api/package-lock.json"],
                paths=["~/.npm"],
            ),
            registries=[
                registry(ECR, "api", credential="ECR_PASSWORD", username="AWS"),
                registry("docker.io", "acme/api", credential="DOCKERHUB_TOKEN", username="acme",
                         content_addressed=True),
            ],
        ),
    )
