# flashsale

An HTTP service for hourly flash sales. At the top of every hour (UTC) a new
sale opens with 10,000 generated items. A user first asks for a checkout code
for an item and then redeems that code to buy it. Each user may buy at most 10
items per sale, a sale closes after 10,000 purchases, and a code expires after
one hour.

Sales, items, checkout attempts and purchases are kept in PostgreSQL. Checkout
codes and the set of items open for checkout are kept in Redis.

## Installing

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Running

```
flashsale
```

The command takes no options besides `--help`; everything comes from the
environment. It prints a banner, then connects to PostgreSQL and Redis, trying
each up to five times with delays of 1, 2, 4, 8 and 16 seconds. It creates the
tables and indexes that are missing, loads every known item into Redis, opens
(and stocks, if empty) the sale for the current hour and serves HTTP on all
interfaces until it receives SIGINT or SIGTERM. A background thread opens the
next sale each hour. The command exits with status 1 if the stores cannot be
reached or the server fails, and 0 after a clean shutdown.

## Configuration

Everything is read from environment variables. An unset, empty or unparsable
value falls back to the default.

| Variable | Default | Used for |
| --- | --- | --- |
| `PORT` | `8080` | HTTP port |
| `PG_USER` | `postgres` | PostgreSQL user |
| `PG_PASSWORD` | `password` | PostgreSQL password |
| `PG_HOST` | `localhost` | PostgreSQL host |
| `PG_PORT` | `5433` | PostgreSQL port |
| `PG_DB` | `app` | PostgreSQL database |
| `REDIS_HOST` | `localhost` | Redis host |
| `REDIS_PORT` | `6379` | Redis port |
| `DB_MAX_OPEN_CONNS` | `100` | upper bound of the database pool |
| `DB_MAX_IDLE_CONNS` | `25` | size of the kept database pool |
| `DB_CONN_MAX_LIFETIME` | `15m` | recycle age of database connections |
| `REDIS_POOL_SIZE` | `100` | maximum Redis connections |
| `REDIS_DIAL_TIMEOUT` | `5s` | Redis connect timeout |
| `REDIS_READ_TIMEOUT` | `3s` | Redis socket timeout |
| `SERVER_SHUTDOWN_TIMEOUT` | `20s` | time allowed for a graceful stop |
| `ENABLE_REQUEST_LOGGER` | `false` | log one line per request |

These further variables are parsed into `Config` but do not change how the
service runs: `DB_CONN_MAX_IDLE_TIME` (`5m`), `REDIS_MIN_IDLE_CONNS` (`10`),
`REDIS_MAX_RETRIES` (`3`), `REDIS_WRITE_TIMEOUT` (`3s`), `REDIS_POOL_TIMEOUT`
(`4s`), `SERVER_READ_TIMEOUT` (`5s`), `SERVER_WRITE_TIMEOUT` (`10s`),
`SERVER_IDLE_TIMEOUT` (`120s`), `REQUEST_TIMEOUT` (`5s`) and
`MAX_CONCURRENT_REQS` (`1000`). Each request runs under a fixed five-second
budget.

Durations use the compact form `300ms`, `1.5s`, `2m30s`, `-1h`; the units are
`ns`, `us`, `µs`, `ms`, `s`, `m` and `h`. Booleans accept `1`, `t`, `T`,
`true`, `TRUE`, `True` and `0`, `f`, `F`, `false`, `FALSE`, `False`.

For example:

```
PG_HOST=db.example.com PG_PASSWORD=password ENABLE_REQUEST_LOGGER=true flashsale
```

## HTTP API

All parameters are passed in the query string. Errors are a line of plain
text with the status codes listed below; successful replies are JSON.

### `POST /checkout?user_id=<user>&id=<item>`

Issues a checkout code for an item that is open in Redis and unsold in the
database.

```
{"code":"…"}
```

| Status | Meaning |
| --- | --- |
| 400 | `user_id` or `id` missing, or `id` not an integer |
| 404 | item not found, or not open for checkout |
| 409 | item already sold |
| 500 | storage failure |

A successful checkout is stored in `checkout_attempts`. For a failed one the
service also tries to store an attempt, and ignores it if that fails.

### `POST /purchase?code=<code>`

Redeems a checkout code. The checks and the sale run in one transaction;
transient storage errors are retried up to three times.

```
{"message":"Purchase successful"}
```

| Status | Meaning |
| --- | --- |
| 400 | code missing, unknown or expired |
| 404 | item does not exist or is already sold |
| 409 | code has already been used |
| 410 | the sale has sold all its items |
| 429 | the user already holds the maximum of 10 items in this sale |
| 500 | storage failure |

After a successful purchase the code is removed from Redis.

### `GET /health`

Checks PostgreSQL and Redis.

```
{"database":"ok","redis":"ok","status":"ok"}
```

If either store fails, its entry and `status` read `error` and the reply
carries status 503.

## Using it from Python

- `flashsale.config.load_config(environ)` builds a frozen `Config` from a
  mapping (the process environment when omitted). `parse_duration` and
  `parse_bool` are the parsers it uses.
- `flashsale.server.build_server(config)` connects to both stores, prepares the
  schema, warms the item cache and returns a `Server`. `Server.run()` serves
  until stopped, `Server.close()` releases the connections, and
  `Server.start_new_sale(now)` opens and stocks the sale of a given hour.
- `flashsale.server.create_app(handler, log_requests)` wraps a
  `flashsale.handlers.Handler` in a Flask application, for mounting the routes
  under another WSGI server. `Handler.checkout(params)`,
  `Handler.purchase(params)` and `Handler.health()` can also be called
  directly; they return a `Reply` with `status`, `body` and `content_type`.
- `flashsale.database.Database` and `flashsale.cache.RedisStore` hold the
  storage operations; `connect_database(config)` and `connect_redis(config)`
  create them with start-up retries.
- `flashsale.server.generate_item_catalog(sale_id, size, rng)` returns the
  random item names and image URLs used to stock a sale.

## What it does not do

There is no authentication: any caller may check out and purchase for any
`user_id`. The service does not limit concurrent requests, does not apply
per-connection read, write or idle timeouts, and does not migrate existing
tables; it only creates the ones that are missing. Items left unsold when an
hour ends stay in the database, and their Redis entries simply expire after
one hour.