# syslabs

A small collection of operating-system exercises as a Python package:

- **`syslabs.fat32`**: read and modify FAT32 disk images. List the root
  directory, read a file, create and delete entries, and fill a range of a
  file with one byte value, allocating clusters as needed.
- **`syslabs.comserver` / `syslabs.client`**: a command server. Clients
  announce themselves on a named FIFO (the "message queue"), then talk to the
  server over their own pair of named pipes. The server runs each command
  with `sh -c` in a thread of its own and sends back what it printed.
- **`syslabs.mf`**: a message framework. Named message queues with a fixed
  capacity live in a segment file that several processes connect to. File
  locks protect each queue.

## Installation

```
pip install .
```

To run the test suite:

```
pip install .[test]
pytest
```

## Command-line tools

### fatmod

Work on a FAT32 disk image:

```
fatmod DISK.img -l                          # list files in the root directory
fatmod DISK.img -r -a FILE                  # print FILE as text, unprintable bytes as dots
fatmod DISK.img -r -b FILE                  # print FILE as hex bytes, sixteen to a line
fatmod DISK.img -c FILE                     # create an empty FILE
fatmod DISK.img -d FILE                     # delete FILE and free its clusters
fatmod DISK.img -w FILE OFFSET LENGTH BYTE  # write LENGTH copies of BYTE at OFFSET
```

File names are compared in their 8.3 form with the padding taken out and no
dot, so `FILE1TXT` matches an entry stored as `FILE1   TXT`. When a command
fails, fatmod prints an `Err:` line and exits with status 1.

### comserver and comclient

Start the server on a queue name:

```
comserver MQNAME                 # queue and pipes in the current directory
comserver MQNAME --workdir DIR   # queue and pipes in DIR
```

Then, from the same directory, connect clients:

```
comclient MQNAME                 # interactive; "quit" ends the session
comclient MQNAME -b COMFILE      # run each line of COMFILE as a command
comclient MQNAME -s WSIZE        # size of the chunks the server writes replies in
```

In an interactive session, `quitall` ends the session and also stops the
server. The server keeps a count of the clients it has connected in
`.client_num_storage.txt` in its working directory.

### mfserver and mfdemo

`mfserver` creates the segment described by a configuration file and keeps it
until it gets SIGINT or SIGTERM. It then removes the segment, its process list
and its lock files:

```
mfserver                                  # reads mf.config in the current directory
mfserver --config FILE --base-dir DIR
```

A configuration file looks like this:

```
# message framework configuration
SHMEM_NAME "mfshared"
SHMEM_SIZE 4096
MAX_MSGS_IN_QUEUE 10
MAX_QUEUES_IN_SHMEM 10
```

`SHMEM_SIZE` is in kilobytes and must be between 512 and 8192.

`mfdemo` starts a producer in a child process. The producer creates queues and
sends messages to them. The parent then receives the messages, prints them and
removes the queues. If no segment exists yet, `mfdemo` creates one and removes
it again at the end:

```
mfdemo                           # one queue, five messages
mfdemo --queues 3 --count 5      # three queues, five messages each
mfdemo --config FILE --base-dir DIR
```

## Library use

```python
from syslabs.fat32 import Fat32Image, format_hex

with Fat32Image.open("disk.img") as image:
    for entry in image.list_entries():
        print(entry.full_name(), entry.file_size)
    print(format_hex(image.read_file("FILE1TXT")))
```

`Fat32Image` also has `create_file`, `delete_file`, `write_data`,
`find_entry`, `allocate_cluster` and `free_cluster`. Failures raise `FatError`.

```python
from syslabs.mf import MessageFramework
from syslabs.mfconfig import read_configuration

framework = MessageFramework(read_configuration("mf.config"), "/tmp/mf")
framework.init()
framework.connect()
qid = framework.create("jobs", 16)        # queue size in kilobytes, 16 to 128
framework.open("jobs")
framework.send(qid, b"hello")
print(framework.recv(qid))                # b'hello'
framework.close(qid)
framework.close(qid)
framework.remove("jobs")
framework.disconnect()
framework.destroy()
```

`create` does not open the queue. `open` adds a reference and `close` gives one
up. A queue that still has references cannot be removed. Errors raise
`MFError`.

`syslabs.comproto` holds the message framing that the command client and server
share (`MessageType`, `encode_message`). `syslabs.client.Client` can be driven
from Python with `connect`, `send_command`, `quit` and `close`.

## What is not included

The package has no thread library and no scheduler. It does not create,
yield between, join or cancel threads of its own. The "shared memory" of the
message framework is a regular file that each process reads and writes. It is
not a memory mapping, and there are no POSIX semaphores. The command server
uses a named FIFO in place of a POSIX message queue.