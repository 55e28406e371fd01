# nvmelib

Tools for working with NVMe devices from Python:

- **NVMe Management Interface (NVMe-MI) messaging**: wire-format headers,
  the message integrity check (CRC-32C), MI commands sent to a management
  endpoint, and NVMe Admin commands sent to controllers behind it.
- **Topology objects**: controllers, namespaces and paths, with the
  addressing, naming and matching rules used when building a view of an
  NVMe system.

The package has no third-party dependencies.

## Installation

```
pip install .
```

To run the test suite:

```
pip install .[test]
pytest
```

## Messages (`nvmelib.messages`)

- Enumerations: `MessageType`, `Ror`, `RespStatus`, `MiOpcode`,
  `DataStructureType`, `ConfigId`, `SmbusFreq`.
- Headers, each a dataclass with `pack()` and the class method `unpack()`:
  `MsgHeader` (4 bytes), `MiRequestHeader` (16), `MiResponseHeader` (8,
  with the 24-bit `nmresp` field), `AdminRequestHeader` (68) and
  `AdminResponseHeader` (20). Packing a field that does not fit raises
  `ValueError`; unpacking too few bytes raises `MIError` with `EPROTO`.
- `crc32c_update(crc, data)` feeds bytes into a running CRC-32C;
  `message_integrity_check(header, data)` returns the MIC of a message.
- `Request` (header, data, MIC) with `compute_mic()`, and `Response`
  (expected header length, maximum data length, and the received header,
  data and MIC) with `verify_mic()`.

Errors:

- `MIError` is an `OSError` carrying an errno value: `EINVAL` for bad
  arguments, `EPROTO` when a response breaks the protocol, `EIO` for other
  unexpected responses (MIC mismatch, wrong direction bit, command slot
  mismatch).
- `MIStatusError` is raised when a response carries a non-zero MI status;
  its `status` attribute holds the value.

## Endpoints (`nvmelib.endpoint`)

A transport carries the messages. Subclass `Transport` and implement
`submit(endpoint, request, response)`, filling in `response.header`,
`response.data` and `response.mic`. `check_timeout()`, `describe()` and
`close()` have defaults that may be overridden; the `name`, `mic_enabled`
and `details` class attributes are also taken into account.

```python
from nvmelib.endpoint import MIRoot, Transport

class MyTransport(Transport):
    name = "mine"

    def submit(self, endpoint, request, response):
        ...  # send request, fill in response

root = MIRoot()
ep = root.init_endpoint(MyTransport())
ep.scan()

for ctrl in ep.controllers:
    print(ctrl.identify_ctrl())

info = ep.read_mi_data_subsys()
mtu = ep.config_get_mctp_mtu(0)
root.close()
```

`Endpoint` offers:

- `set_timeout()` (checked by the transport; 1000 ms by default),
  `set_mprt_max()`, `description()` and `close()`;
- `init_ctrl()` and `scan()`, which reads the controller list once (or
  again with `force_rescan=True`) and creates a `Controller` for each
  non-zero ID;
- `submit()`, which validates lengths, computes and checks the MIC when
  the transport enables it, and checks the response header;
- MI commands: `read_mi_data_subsys()`, `read_mi_data_port()`,
  `read_mi_data_ctrl_list()`, `read_mi_data_ctrl()`,
  `subsystem_health_status_poll()`, `config_get()`, `config_set()`, and
  the helpers `config_get_smbus_freq()`, `config_set_smbus_freq()`,
  `config_set_health_status_change()`, `config_get_mctp_mtu()` and
  `config_set_mctp_mtu()`.

Data-structure reads return the raw bytes of the structure.

## Admin commands (`nvmelib.admin`)

`Controller` sends Admin commands through its endpoint:

- `identify_partial()`, `identify()`, `identify_cns_nsid()`,
  `identify_ctrl()` and `identify_ctrl_list()`; a short response raises
  `MIError` with `EPROTO`.
- `get_log_page()`, split into transfers of at most 4096 bytes; a short
  transfer ends the log page.
- `security_send()` and `security_recv()`, limited to 4096 bytes.
- `xfer()` for raw commands built from an `AdminRequestHeader`.
- `close()` detaches the controller from its endpoint.

`identify_partial()`, `identify()` and `security_recv()` return an
`AdminResult` holding completion dword 0 and the response data.

## Topology objects (`nvmelib.tree_nodes`)

- `create_ctrl()` validates addressing and returns an unconnected
  `NvmeController`; a host transport address that is a host name is
  resolved for `tcp` and `rdma` transports.
- `NvmeController.matches()` applies the controller matching rules
  (transport must be equal; transport address compared without regard to
  case; fields missing on either side are ignored). It also has
  `add_path()`, `add_namespace()`, `deconfigure()`, `unlink()` and
  `free()`.
- `Namespace` holds geometry and identifiers; `lba_range()` converts a
  byte range to a starting LBA and zero-based block count,
  `parse_descriptors()` reads EUI-64, NGUID, UUID and CSI from identify
  descriptor data, and `detach_paths()` drops its paths.
- `Path` links a controller and a namespace; `free()` unlinks it.
- Helpers: `traddr_is_hostname()`, `parse_path_name()`,
  `parse_ns_name()`, `generic_name()` and `bytes_to_lba()`.

## What this package does not do

- It has no host or subsystem objects, and so no container that ties
  controllers and namespaces into a full tree: a controller's
  `subsystem` attribute is whatever object the caller supplies.
- It does not scan the system, read device attributes or open device
  nodes.
- It ships no concrete transport; an endpoint needs a `Transport`
  subclass supplied by the caller.
- It reads and writes no configuration files and has no command-line
  program.