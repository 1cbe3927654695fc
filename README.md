# sparklane

sparklane is a small HTTP service for deploying projects. A client uploads a
zip archive of its code together with some JSON metadata. sparklane copies a
base disk image, mounts it, and unpacks the archive into it. It writes an init
script from the build and run commands, then boots the image in its own
Firecracker micro-VM with a dedicated TAP network device.

## Requirements

- Linux with `ip`, `mount` and `firecracker` on the `PATH`
- Root privileges, because sparklane mounts loop images and creates TAP devices
- A base root filesystem at `/mnt/sparklane/base.img` and a kernel at `/mnt/vmlinux`

## Installation

```
pip install .
```

## Running the server

```
sparklane [--host HOST] [--port PORT] [--db PATH]
```

| option   | default        | meaning                                  |
|----------|----------------|------------------------------------------|
| `--host` | `0.0.0.0`      | address to listen on                     |
| `--port` | `8096`         | port to listen on                        |
| `--db`   | `sparklane.db` | SQLite file that holds the state records |

Before it starts, the server loads environment variables from a `.env` file
in the current directory if there is one.

## Deploying a project

Send a `POST` to `/deploy` as `multipart/form-data` with two fields:

- `metadata`: a JSON document
- `file`: a zip archive of the project. Directory entries are skipped and
  files keep their paths inside the archive.

The metadata document may hold these keys. A value of the wrong type counts
as absent.

| key       | meaning                                                          |
|-----------|------------------------------------------------------------------|
| `name`    | display name, default `Sparklane Cloud Project`                  |
| `project` | requested subdomain; used only if no record is stored under it   |
| `build`   | list of shell commands run before the app starts (required); non-string entries are dropped |
| `run`     | shell command that starts the app (required)                     |

If no subdomain is requested, or the requested one is taken, sparklane tries
up to 11 generated adjective-noun names such as `nimble-octopus`.

Each deployment gets a random UUID as its instance id. The instance record is
stored under `instance:<id>` as JSON. The VM gets the TAP device
`tap<first 8 characters of id>` and a MAC address derived from the id,
beginning `AA:FC:`. The guest runs `/init`, which is linked to `init.sh`.
That script changes to `/app`, runs the build commands and then the run
command, and finally powers the VM off.

The server answers:

- `{}` with status 200 once the `firecracker` process has exited successfully.
- Status 400 with a JSON `{"error": ...}` body if a multipart part lacks a
  content disposition or a field name.
- Status 400 with a text body if the archive cannot be read, if no free
  subdomain was found, or if the `build` or `run` command is missing.
- Status 500 if the metadata is not valid JSON, or if preparing or starting
  the VM fails.

Example:

```
curl -F 'metadata={"name":"demo","build":["npm install"],"run":"node index.js"}' \
     -F file=@project.zip http://localhost:8096/deploy
```

## Library use

The building blocks can be imported on their own:

- `sparklane.store.Db(path)` is an ordered byte-keyed store kept in an SQLite
  file. It has the async methods `get`, `insert`, `scan_prefix` and `remove`,
  and raises `DatabaseError` when an operation fails.
- `sparklane.vm` holds `Config`, `extract_zip`, `generate_mac`,
  `render_init_script`, `render_vm_config`, `ensure_tap_device`, `spin`,
  `unspin` and `SpinError`.
- `sparklane.server` holds `Metadata`, `parse_metadata`,
  `random_project_name`, `pick_subdomain`, `create_app(db, spinner)` and
  `main`. Pass your own `spinner` coroutine to `create_app` to run the
  application without starting VMs, for example in tests.

## What it does not do

- The `spin` call waits until the VM exits, so each request stays open while
  its VM runs.
- No HTTP endpoint stops, lists or removes instances. `sparklane.vm.unspin`
  only unmounts an instance's user-code directory.
- Subdomains are not routed to the VMs, and the chosen subdomain is not
  recorded under its own key. It is stored only inside the instance record.
- There are no user accounts, credits or payments.