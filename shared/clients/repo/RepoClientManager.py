from shared.helper.HelperConfig import HelperConfig
from shared.clients.repo.RepoClientInterface import RepoClientInterface


class RepoClientManager:
    """Manager class to instantiate the configured repository client."""

    def __init__(self, helper_config: HelperConfig):
        self.helper_config = helper_config
        self.logging = helper_config.get_logger()
        self.client = self._initialize_client()

    def _get_engine_from_env(self) -> str:
        engine = self.helper_config.get_string_val("REPO_ENGINE", default="Memory")
        if not engine.strip():
            raise ValueError("No repository engine specified in configuration (REPO_ENGINE).")
        return engine.strip().lower().capitalize()

    def _initialize_client(self) -> RepoClientInterface:
        """Instantiate the repository client for the configured engine.

        Returns:
            RepoClientInterface: The instantiated client.

        Raises:
            ValueError: If the engine is unsupported or cannot be imported.
        """
        engine = self._get_engine_from_env()
        class_name = f"RepoClient{engine}"
        try:
            module = __import__(
                f"shared.clients.repo.{engine.lower()}.{class_name}",
                fromlist=[class_name],
            )
            client_class = getattr(module, class_name)
        except (ImportError, AttributeError) as e:
            raise ValueError("Unsupported repository engine '%s'. Error: %s" % (engine, e))
        client = client_class(helper_config=self.helper_config)
        self.logging.debug("Instantiated repository client for engine: %s", engine)
        return client

    def get_client(self) -> RepoClientInterface:
        """Return the instantiated repository client."""
        return self.client
