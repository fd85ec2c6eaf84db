SERVICE_NAME = "batcher"
