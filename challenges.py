import logging

from azure.core.exceptions import AzureError

from errors import ChallengePublishError

logger = logging.getLogger(__name__)


class ChallengeResolver:
    """Publishes http-01 responses and tells the CA they are in place.

    Use as a context manager around the order readiness poll: every object
    published by ``resolve`` is removed on exit, whether the block succeeded
    or not.
    """

    def __init__(self, client, publisher):
        self.client = client
        self.publisher = publisher
        self.published = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        failed = self.cleanup()
        if failed and exc_type is None:
            raise ChallengePublishError(f"Could not remove challenge object(s): {', '.join(failed)}",
                                        step="cleanup")
        return False

    def resolve(self, state, authorizations):
        pending = []
        for authz in authorizations:
            if authz.status == "valid":
                logger.info("%s has already been authorized", authz.identifier.value)
                continue
            challenge = authz.http_challenge()
            content = self.client.key_authorization(state, challenge)
            self._publish(authz.identifier.value, challenge.object_name, content)
            pending.append((authz, challenge))

        # all responses are in place before the CA is asked to look at any of them
        for authz, challenge in pending:
            logger.info("Starting verification of %s", authz.identifier.value)
            _, state = self.client.complete_challenge(state, challenge, identifier=authz.identifier.value)

        return state

    def _publish(self, identifier, name, content):
        try:
            self.publisher.put(name, content)
        except AzureError as err:
            raise ChallengePublishError(f"Could not publish {name}: {err}", step="publish-challenge",
                                        identifier=identifier) from err
        self.published.append(name)
        logger.info("Published challenge for %s at %s", identifier, name)

    def cleanup(self):
        """Delete every published object, returning the names that could not be removed."""
        failed = []
        while self.published:
            name = self.published.pop()
            try:
                self.publisher.delete(name)
            except AzureError as err:
                logger.error("Challenge cleanup of %s failed: %s", name, err)
                failed.append(name)
            else:
                logger.debug("Removed challenge object %s", name)
        return failed
