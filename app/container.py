from typing import cast

from dependency_injector import containers, providers

from app.controllers.container import ControllerContainer
from app.controllers.resilience.container import ResilienceContainer
from app.repos.container import RepoContainer


class ApplicationContainer(containers.DeclarativeContainer):
    repos: RepoContainer = cast(RepoContainer, providers.Container(RepoContainer))
    resilience: ResilienceContainer = cast(ResilienceContainer, providers.Container(ResilienceContainer))
    controllers: ControllerContainer = cast(
        ControllerContainer, providers.Container(ControllerContainer, repos=repos, resilience=resilience)
    )
