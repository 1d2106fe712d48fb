"""Reference analysis worker consuming the durable queue."""
