import logging

from azure.core.exceptions import ResourceNotFoundError
from azure.storage.blob import BlobServiceClient, ContentSettings

logger = logging.getLogger(__name__)


class BlobChallengePublisher:
    """Serves challenge responses from a blob container.

    The gateway redirects ``/.well-known/acme-challenge/*`` to the container's
    public endpoint, so the blob name is the request path.
    """

    def __init__(self, container_client):
        self.container_client = container_client

    @classmethod
    def from_account(cls, account_url, container, credential):
        service = BlobServiceClient(account_url, credential=credential)
        return cls(service.get_container_client(container))

    def put(self, name, content):
        # exact bytes; the CA compares the body with the key authorization
        self.container_client.upload_blob(
            name,
            content.encode("ascii"),
            overwrite=True,
            content_settings=ContentSettings(content_type="text/plain"),
        )

    def delete(self, name):
        try:
            self.container_client.delete_blob(name)
        except ResourceNotFoundError:
            logger.debug("Blob %s was already gone", name)
