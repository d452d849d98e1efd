from .publisher import Documentation, PublishMetadata, Publisher, slugify
from .filesystem_publisher import FileSystemPublisher
