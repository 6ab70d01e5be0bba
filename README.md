# tunoffload

Packet handling for Linux TUN devices opened with the virtio-net header
(`IFF_VNET_HDR`). The package works on plain bytes:

- it splits a GSO super-packet read from a device into individual IP packets,
  fixing IP lengths, IPv4 ids and all checksums;
- it coalesces a batch of TCP and UDP packets (GRO) before they are written,
  and prefixes each result with the right virtio-net header.

It has no dependencies outside the standard library.

## Installing

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Read path

`tunoffload.vnet.split_received(raw, max_segments)` takes one frame as read
from a vnet-hdr device (the virtio header followed by the packet) and returns
a list of IP packets as `bytes`:

```python
from tunoffload.vnet import split_received

packets = split_received(raw_frame, 64)
```

A non-GSO frame comes back as a single packet, with its checksum completed if
the header has `VIRTIO_NET_HDR_F_NEEDS_CSUM` set. If the frame would yield
more than `max_segments` packets, or is malformed, `OffloadError` is raised.
`handle_virtio_read(hdr, data, max_segments)` does the same when the header
has already been decoded.

## Write path

`tunoffload.vnet.prepare_batch(gro_table, bufs, offset, vnet_hdr, udp_gso)`
takes a list of buffers, each holding one IP packet starting at `offset`, and
returns the byte strings to write to the device. With `vnet_hdr=True` the
packets are coalesced and each returned string starts with its virtio header,
written into the bytes just before `offset`; `offset` must be at least
`VIRTIO_NET_HDR_LEN`. With `vnet_hdr=False` the packets are returned as they
are. The indices of the buffers written are left in `gro_table.to_write`.

Coalescing only grows a buffer within its capacity. A plain `bytearray` has a
capacity equal to its length, so nothing is merged into it; use
`tunoffload.flows.PacketBuffer` to give the buffers room to grow:

```python
from tunoffload.batch import GroTable
from tunoffload.flows import PacketBuffer
from tunoffload.virtio import VIRTIO_NET_HDR_LEN
from tunoffload.vnet import prepare_batch

offset = VIRTIO_NET_HDR_LEN
bufs = [
    PacketBuffer(bytes(offset) + pkt, capacity=2 * offset + 65535)
    for pkt in packets
]
gro = GroTable()
frames = prepare_batch(gro, bufs, offset, vnet_hdr=True, udp_gso=True)
```

A `GroTable` can be reused across batches; it is reset on each call.
`udp_gso` says whether UDP packets may be coalesced as well as TCP ones.

## Modules

- `tunoffload.checksum`: `checksum`, `checksum_no_fold` and
  `pseudo_header_checksum_no_fold` for Internet checksums.
- `tunoffload.virtio`: `VirtioNetHdr` (`decode`, `encode`, `encode_into`),
  `gso_split`, `gso_none_checksum`, the `VIRTIO_NET_HDR_*` constants,
  `IDEAL_BATCH_SIZE` and `OffloadError`.
- `tunoffload.flows`: `PacketBuffer`, the TCP and UDP flow keys, items and
  tables used during coalescing.
- `tunoffload.coalesce`: the per-packet checks and merges (`tcp_gro`,
  `udp_gro`, `checksum_valid` and friends).
- `tunoffload.batch`: `handle_gro`, `packet_is_gro_candidate`, the
  accounting functions that write virtio headers, and `GroTable`.
- `tunoffload.vnet`: `split_received`, `handle_virtio_read` and
  `prepare_batch`.

Errors in packet data or offload metadata raise
`tunoffload.virtio.OffloadError`, a subclass of `ValueError`.

## What it does not do

The package does not open or configure devices. It has no code to create a
TUN/TAP interface, set its offload flags, assign addresses, change the MTU or
bring it up; reading frames from and writing frames to the device's file
descriptor is left to the caller.